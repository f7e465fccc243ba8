"""Shared FastAPI dependencies."""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import MobileSession
from ..services import session_registry, inbox
from ..services.push_dispatcher import push_dispatcher, PushDispatchEngine
from ..services.sync_queue import sync_processor, SyncQueueProcessor

logger = logging.getLogger(__name__)


def get_push_dispatcher() -> PushDispatchEngine:
    return push_dispatcher


def get_sync_processor() -> SyncQueueProcessor:
    return sync_processor


def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[7:].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


async def get_current_session(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> MobileSession:
    """Active session identified by the bearer token. Records activity."""
    session = await session_registry.get_session(db, _bearer(authorization))
    if session is None or not session.is_active:
        raise HTTPException(status_code=401, detail="Session is not active")
    await session_registry.touch_session(db, session)
    return session


async def get_polling_session(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> MobileSession:
    """Like get_current_session, but a kicked session may still collect its kick notice."""
    session = await session_registry.get_session(db, _bearer(authorization))
    if session is None:
        raise HTTPException(status_code=401, detail="Session is not active")
    if session.is_active:
        await session_registry.touch_session(db, session)
        return session
    if await inbox.has_pending_kick(db, session):
        return session
    raise HTTPException(status_code=401, detail="Session is not active")
