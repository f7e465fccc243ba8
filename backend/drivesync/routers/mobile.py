"""Mobile client API: sessions, notification polling and the offline sync queue."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import MobileSession
from ..schemas.notification import PollData, PollNotification, MarkReadRequest
from ..schemas.session import SessionRegister, PushTokenUpdate, SessionResponse
from ..schemas.sync import SyncQueueRequest
from ..services import session_registry, inbox
from ..services.session_registry import SessionInactiveError, SessionNotFoundError
from ..services.sync_queue import SyncQueueProcessor, SyncConfigurationError
from .dependencies import get_current_session, get_polling_session, get_sync_processor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mobile", tags=["mobile"])


# ─── Sessions ───────────────────────────────────────────────────────────────

@router.post("/sessions", status_code=201)
async def register_session(request: SessionRegister, db: AsyncSession = Depends(get_db)):
    """Open a session for a device that just completed login.

    The returned session id is the bearer token for the rest of the mobile API.
    """
    session = await session_registry.register_session(
        db,
        user_id=request.user_id,
        device_id=request.device_id,
        platform=request.platform,
        push_token=request.push_token,
        user_name=request.user_name,
        user_email=request.user_email,
        device_name=request.device_name,
        app_version=request.app_version,
    )
    return {"success": True, "data": SessionResponse.model_validate(session)}


@router.put("/sessions/current/push-token")
async def update_push_token(
    request: PushTokenUpdate,
    session: MobileSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    """Register, replace or clear the device's push token."""
    try:
        session = await session_registry.update_push_token(db, session, request.push_token)
    except SessionInactiveError:
        raise HTTPException(status_code=401, detail="Session is not active")
    return {"success": True, "data": SessionResponse.model_validate(session)}


@router.delete("/sessions/current")
async def logout(
    session: MobileSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    """End the current session."""
    await session_registry.deactivate_session(db, session, "logout")
    return {"success": True}


# ─── Notifications (poll endpoint) ──────────────────────────────────────────

@router.get("/notifications")
async def poll_notifications(
    unread_only: bool = Query(True, alias="unreadOnly"),
    limit: int = Query(20, ge=1, le=100),
    since: Optional[datetime] = None,
    session: MobileSession = Depends(get_polling_session),
    db: AsyncSession = Depends(get_db),
):
    """Notifications created after `since`, the unread total and the kick flag."""
    if since is not None and since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)

    notifications, unread_count, has_kick = await inbox.poll_notifications(
        db, session, since=since, limit=limit, unread_only=unread_only,
    )
    return {
        "success": True,
        "data": PollData(
            notifications=[PollNotification.model_validate(n) for n in notifications],
            unread_count=unread_count,
            has_kick=has_kick,
        ),
    }


@router.post("/notifications")
async def mark_notifications_read(
    request: MarkReadRequest,
    session: MobileSession = Depends(get_polling_session),
    db: AsyncSession = Depends(get_db),
):
    """Mark notifications read. Ids that are not the caller's, or already read, are ignored."""
    marked = await inbox.mark_read(db, session, request.notification_ids)
    return {"success": True, "data": {"markedAsRead": marked}}


# ─── Offline sync queue ─────────────────────────────────────────────────────

async def _process(processor: SyncQueueProcessor, session_id: str) -> list:
    try:
        return await processor.process_queue(session_id)
    except SyncConfigurationError as e:
        logger.error(f"Sync processing unavailable: {e}")
        raise HTTPException(status_code=503, detail="Sync processing is not configured")
    except (SessionInactiveError, SessionNotFoundError):
        raise HTTPException(status_code=401, detail="Session is not active")


@router.post("/sync", status_code=202)
async def queue_operations(
    request: SyncQueueRequest,
    session: MobileSession = Depends(get_current_session),
    processor: SyncQueueProcessor = Depends(get_sync_processor),
):
    """Durably queue client mutations, optionally draining the queue right away."""
    queued = []
    try:
        for item in request.operations:
            op = await processor.queue_operation(
                session.id,
                operation=item.operation,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                payload=item.payload,
            )
            queued.append(op.id)
    except (SessionInactiveError, SessionNotFoundError):
        raise HTTPException(status_code=401, detail="Session is not active")

    data = {"queued": queued}
    if request.process:
        data["results"] = await _process(processor, session.id)
    return {"success": True, "data": data}


@router.post("/sync/process")
async def process_queue(
    session: MobileSession = Depends(get_current_session),
    processor: SyncQueueProcessor = Depends(get_sync_processor),
):
    """Replay the session's pending operations."""
    results = await _process(processor, session.id)
    return {
        "success": True,
        "data": {
            "processed": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
            "results": results,
        },
    }


@router.get("/sync/status")
async def sync_status(
    session: MobileSession = Depends(get_current_session),
    processor: SyncQueueProcessor = Depends(get_sync_processor),
):
    """Pending/failed counts and last sync time for the "N changes waiting" indicator."""
    return {"success": True, "data": await processor.get_sync_status(session.id)}
