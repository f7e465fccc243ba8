"""Main FastAPI application with server/client mode switching."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db, close_db
from .routers import mobile_router, admin_router
from .services.scheduler import scheduler_service
from .services.notification_poller import NotificationPoller

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Client mode poller
notification_poller = None


def _terminate_local_session():
    """Local logout for client mode. The poller has already stopped itself."""
    logger.warning("Session terminated by server, clearing local credentials")
    settings.access_token = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    global notification_poller
    logger.info(f"Starting DriveSync in {settings.mode.upper()} mode")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    if settings.mode == "server":
        # Server mode: receipt reconciliation, session expiry and queue pruning
        scheduler_service.start()
        logger.info("Scheduler started")

    elif settings.mode == "client":
        # Client mode: poll the remote mobile API on behalf of one session
        notification_poller = NotificationPoller(
            api_base_url=settings.api_base_url,
            access_token=settings.access_token,
            terminate_session=_terminate_local_session,
        )
        if notification_poller.start():
            logger.info("Notification poller started")

    yield

    # Shutdown
    if settings.mode == "server":
        scheduler_service.stop()
    elif notification_poller is not None:
        notification_poller.stop()

    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="DriveSync",
        description="Push dispatch, notification polling and offline sync for the mobile app",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(mobile_router)
    app.include_router(admin_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "mode": settings.mode,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
