"""API routers."""
from .mobile import router as mobile_router
from .admin import router as admin_router

__all__ = ["mobile_router", "admin_router"]
