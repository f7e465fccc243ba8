"""Admin API: sessions, kicks, push dispatch and dashboard stats."""
import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.session import PLATFORMS
from ..schemas.push import PushRequest, TemplatePushRequest, DispatchSummary, PushRecordResponse
from ..schemas.session import SessionResponse, SessionPage
from ..services import session_registry, inbox
from ..services.push_dispatcher import (
    PushDispatchEngine,
    DispatchResult,
    TARGET_TYPES,
    PUSH_TEMPLATES,
    build_template,
    push_history,
)
from .dependencies import get_push_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/app-dashboard", tags=["admin"])

TERMINATED_TITLE = "Session avslutad"
TERMINATED_BODY = "Din session har avslutats av administratören. Logga in igen."
TERMINATED_DATA = {"notificationType": "session_terminated", "action": "force_logout"}


def _summary(result: DispatchResult) -> dict:
    return DispatchSummary(**result.to_dict()).model_dump(exclude_none=True)


# ─── Sessions ───────────────────────────────────────────────────────────────

@router.get("/sessions")
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[str] = Query(None, pattern="^(active|expired)$"),
    platform: Optional[str] = Query(None, pattern="^(ios|android)$"),
    db: AsyncSession = Depends(get_db),
):
    """List sessions, most recently active first."""
    sessions, total = await session_registry.list_sessions(
        db, status=status, platform=platform, search=search, page=page, limit=limit,
    )
    return {
        "success": True,
        "data": SessionPage(
            sessions=[SessionResponse.model_validate(s) for s in sessions],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    }


@router.delete("/sessions/{session_id}")
async def kick_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: PushDispatchEngine = Depends(get_push_dispatcher),
):
    """Terminate (kick) a session.

    The device learns about it from its next poll; a push is attempted first
    so a backgrounded app hears about it sooner.
    """
    session = await session_registry.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if not session.is_active:
        raise HTTPException(status_code=409, detail="Session is already inactive")

    if session.push_token:
        try:
            await dispatcher.dispatch_to_device(session.push_token, TERMINATED_TITLE, TERMINATED_BODY, TERMINATED_DATA)
        except Exception as e:
            logger.warning(f"Kick push for session {session_id} failed: {e}")

    await session_registry.deactivate_session(db, session, "kicked")
    await inbox.record_kick(db, session)

    logger.info(f"Session {session_id} of user {session.user_id} kicked")
    return {
        "success": True,
        "data": {"sessionId": session.id, "userId": session.user_id, "userName": session.user_name},
    }


@router.delete("/sessions/user/{user_id}")
async def kick_user_sessions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: PushDispatchEngine = Depends(get_push_dispatcher),
):
    """Kick every active session of a user."""
    try:
        await dispatcher.dispatch_to_user(user_id, "Alla sessioner avslutade", "Logga in igen.", TERMINATED_DATA)
    except Exception as e:
        logger.warning(f"Kick push for user {user_id} failed: {e}")

    sessions = await session_registry.deactivate_user_sessions(db, user_id, "kicked")
    if not sessions:
        raise HTTPException(status_code=404, detail="No active sessions for this user")

    for session in sessions:
        await inbox.record_kick(db, session)

    return {"success": True, "data": {"terminatedCount": len(sessions)}}


# ─── Push ───────────────────────────────────────────────────────────────────

@router.post("/push")
async def send_push(
    request: PushRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: PushDispatchEngine = Depends(get_push_dispatcher),
):
    """Dispatch a notification to all devices, a user, a single device or a platform.

    Except for single-device pushes, the affected users also get an inbox
    entry so clients without a working push channel see it on their next poll.
    """
    data = request.data or {}
    notification_type = data.get("notificationType", "admin_broadcast")

    if request.target_type == "all":
        result = await dispatcher.dispatch_to_all(request.title, request.body, request.data)
        user_ids = await session_registry.resolve_user_ids(db)
    elif request.target_type == "user":
        if not request.target_id:
            raise HTTPException(status_code=400, detail="targetId (userId) is required for user target")
        result = await dispatcher.dispatch_to_user(request.target_id, request.title, request.body, request.data)
        user_ids = [request.target_id]
    elif request.target_type == "device":
        if not request.target_id:
            raise HTTPException(status_code=400, detail="targetId (pushToken) is required for device target")
        result = await dispatcher.dispatch_to_device(request.target_id, request.title, request.body, request.data)
        user_ids = []
    else:
        if request.target_platform not in PLATFORMS:
            raise HTTPException(status_code=400, detail="targetPlatform must be ios or android")
        result = await dispatcher.dispatch_to_platform(
            request.target_platform, request.title, request.body, request.data,
        )
        user_ids = await session_registry.resolve_user_ids(db, platform=request.target_platform)

    if user_ids:
        await inbox.notify_users(db, user_ids, notification_type, request.title, request.body, request.data)

    return {"success": True, "data": _summary(result)}


@router.post("/push/template")
async def send_template_push(
    request: TemplatePushRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: PushDispatchEngine = Depends(get_push_dispatcher),
):
    """Dispatch one of the predefined templates to a user or everyone."""
    try:
        message = build_template(request.template, request.params)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.target_type == "user" and request.target_id:
        result = await dispatcher.dispatch_to_user(
            request.target_id, message["title"], message["body"], message["data"],
        )
        user_ids = [request.target_id]
    else:
        result = await dispatcher.dispatch_to_all(message["title"], message["body"], message["data"])
        user_ids = await session_registry.resolve_user_ids(db)

    await inbox.notify_users(
        db, user_ids, message["data"]["notificationType"], message["title"], message["body"], message["data"],
    )
    return {"success": True, "data": {"sent": result.sent, "failed": result.failed}}


@router.get("/push/templates")
async def list_templates():
    return {"success": True, "data": sorted(PUSH_TEMPLATES)}


@router.get("/push/history")
async def get_push_history(
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    target_type: Optional[str] = Query(None, alias="targetType"),
    db: AsyncSession = Depends(get_db),
):
    """Dispatch log, newest first."""
    if target_type is not None and target_type not in TARGET_TYPES:
        target_type = None
    records, total = await push_history(db, page=page, limit=limit, target_type=target_type)
    return {
        "success": True,
        "data": {
            "notifications": [PushRecordResponse.model_validate(r) for r in records],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


@router.post("/push/reconcile")
async def reconcile_receipts(dispatcher: PushDispatchEngine = Depends(get_push_dispatcher)):
    """Run receipt reconciliation now instead of waiting for the scheduler."""
    return {"success": True, "data": await dispatcher.reconcile_receipts()}


# ─── Stats ──────────────────────────────────────────────────────────────────

@router.get("/stats")
async def get_stats(db: AsyncSession = Depends(get_db)):
    """Aggregated numbers for the admin dashboard."""
    return {"success": True, "data": await session_registry.session_stats(db)}
