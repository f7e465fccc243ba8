"""Session registry - durable record of app sessions and their push registrations."""
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Iterable

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import MobileSession, PushNotification
from ..models.session import PLATFORMS
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    """No session with the given id."""


class SessionInactiveError(Exception):
    """The session has been logged out, kicked or has expired."""


def _short(token: Optional[str]) -> str:
    return f"{token[:16]}..." if token else "<none>"


async def register_session(
    db: AsyncSession,
    user_id: str,
    device_id: str,
    platform: str,
    push_token: Optional[str] = None,
    user_name: Optional[str] = None,
    user_email: Optional[str] = None,
    device_name: Optional[str] = None,
    app_version: Optional[str] = None,
) -> MobileSession:
    """Create an active session for a freshly logged-in device."""
    if platform not in PLATFORMS:
        raise ValueError(f"platform must be one of: {', '.join(PLATFORMS)}")

    now = datetime.utcnow()
    session = MobileSession(
        user_id=user_id,
        user_name=user_name,
        user_email=user_email,
        device_id=device_id,
        device_name=device_name,
        platform=platform,
        app_version=app_version,
        is_active=True,
        created_at=now,
        last_active_at=now,
        expires_at=now + timedelta(days=settings.session_ttl_days),
    )
    db.add(session)
    await db.flush()

    if push_token:
        await _release_token(db, push_token, keep_session_id=session.id)
        session.push_token = push_token

    await retry_on_lock(db.commit)
    await db.refresh(session)
    logger.info(f"Session {session.id} registered for user {user_id} ({platform}, token {_short(push_token)})")
    return session


async def get_session(db: AsyncSession, session_id: str) -> Optional[MobileSession]:
    result = await db.execute(select(MobileSession).where(MobileSession.id == session_id))
    return result.scalar_one_or_none()


async def require_active_session(db: AsyncSession, session_id: str) -> MobileSession:
    """Fetch a session, raising unless it exists and is still active."""
    session = await get_session(db, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    if not session.is_active:
        raise SessionInactiveError(session_id)
    return session


async def touch_session(db: AsyncSession, session: MobileSession) -> None:
    """Record activity on an authenticated request."""
    session.last_active_at = datetime.utcnow()
    await retry_on_lock(db.commit)


async def _release_token(db: AsyncSession, token: str, keep_session_id: Optional[str] = None) -> int:
    """Clear a push token from every session except keep_session_id."""
    stmt = update(MobileSession).where(MobileSession.push_token == token)
    if keep_session_id is not None:
        stmt = stmt.where(MobileSession.id != keep_session_id)
    result = await db.execute(stmt.values(push_token=None))
    return result.rowcount or 0


async def update_push_token(db: AsyncSession, session: MobileSession, token: Optional[str]) -> MobileSession:
    """Set, replace or clear the push token of an active session.

    A token belongs to at most one session, so any other session holding it
    loses it.
    """
    if not session.is_active:
        raise SessionInactiveError(session.id)

    if token:
        released = await _release_token(db, token, keep_session_id=session.id)
        if released:
            logger.info(f"Push token {_short(token)} moved from {released} other session(s)")

    session.push_token = token or None
    session.last_active_at = datetime.utcnow()
    await retry_on_lock(db.commit)
    await db.refresh(session)
    logger.info(f"Session {session.id} push token set to {_short(token)}")
    return session


async def clear_push_token(db: AsyncSession, token: str) -> int:
    """Drop a dead push registration. The sessions themselves stay active."""
    cleared = await _release_token(db, token)
    await retry_on_lock(db.commit)
    if cleared:
        logger.info(f"Cleared dead push token {_short(token)} from {cleared} session(s)")
    return cleared


async def resolve_push_tokens(
    db: AsyncSession,
    user_id: Optional[str] = None,
    platform: Optional[str] = None,
) -> List[str]:
    """Tokens of active sessions, optionally filtered by user or platform."""
    conditions = [
        MobileSession.is_active.is_(True),
        MobileSession.push_token.is_not(None),
        MobileSession.push_token != "",
    ]
    if user_id is not None:
        conditions.append(MobileSession.user_id == user_id)
    if platform is not None:
        conditions.append(MobileSession.platform == platform)

    result = await db.execute(
        select(MobileSession.push_token)
        .where(and_(*conditions))
        .order_by(MobileSession.created_at, MobileSession.id)
    )
    # De-duplicate while keeping order
    return list(dict.fromkeys(result.scalars().all()))


async def resolve_user_ids(db: AsyncSession, platform: Optional[str] = None) -> List[str]:
    """Distinct users with at least one active session."""
    stmt = select(MobileSession.user_id).where(MobileSession.is_active.is_(True)).distinct()
    if platform is not None:
        stmt = stmt.where(MobileSession.platform == platform)
    result = await db.execute(stmt)
    return sorted(result.scalars().all())


async def active_token_set(db: AsyncSession, tokens: Iterable[str]) -> set:
    """Subset of tokens currently registered to an active session."""
    tokens = list(tokens)
    if not tokens:
        return set()
    result = await db.execute(
        select(MobileSession.push_token).where(
            MobileSession.push_token.in_(tokens),
            MobileSession.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def deactivate_session(db: AsyncSession, session: MobileSession, reason: str) -> bool:
    """End a session. Returns False if it was already inactive."""
    if not session.is_active:
        return False
    session.is_active = False
    session.ended_at = datetime.utcnow()
    session.end_reason = reason
    await retry_on_lock(db.commit)
    logger.info(f"Session {session.id} deactivated ({reason})")
    return True


async def deactivate_user_sessions(db: AsyncSession, user_id: str, reason: str) -> List[MobileSession]:
    """End every active session of a user, returning the sessions that were ended."""
    result = await db.execute(
        select(MobileSession).where(
            MobileSession.user_id == user_id,
            MobileSession.is_active.is_(True),
        )
    )
    sessions = list(result.scalars().all())
    now = datetime.utcnow()
    for session in sessions:
        session.is_active = False
        session.ended_at = now
        session.end_reason = reason
    if sessions:
        await retry_on_lock(db.commit)
        logger.info(f"Deactivated {len(sessions)} session(s) for user {user_id} ({reason})")
    return sessions


async def expire_sessions(db: AsyncSession) -> int:
    """Deactivate sessions past their expiry time."""
    now = datetime.utcnow()
    result = await db.execute(
        update(MobileSession)
        .where(
            MobileSession.is_active.is_(True),
            MobileSession.expires_at.is_not(None),
            MobileSession.expires_at < now,
        )
        .values(is_active=False, ended_at=now, end_reason="expired")
    )
    await retry_on_lock(db.commit)
    expired = result.rowcount or 0
    if expired:
        logger.info(f"Expired {expired} session(s)")
    return expired


async def mark_synced(db: AsyncSession, session_id: str) -> None:
    """Stamp the session's last-sync time after a queue run."""
    await db.execute(
        update(MobileSession)
        .where(MobileSession.id == session_id)
        .values(last_sync_at=datetime.utcnow())
    )
    await retry_on_lock(db.commit)


async def list_sessions(
    db: AsyncSession,
    status: Optional[str] = None,
    platform: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[List[MobileSession], int]:
    """Paginated session listing for the admin dashboard."""
    conditions = []
    if status == "active":
        conditions.append(MobileSession.is_active.is_(True))
    elif status == "expired":
        conditions.append(MobileSession.is_active.is_(False))
    if platform:
        conditions.append(MobileSession.platform == platform)
    if search:
        pattern = f"%{search}%"
        conditions.append(
            MobileSession.user_name.like(pattern)
            | MobileSession.user_email.like(pattern)
            | MobileSession.device_id.like(pattern)
            | MobileSession.device_name.like(pattern)
        )

    where = and_(*conditions) if conditions else None

    count_stmt = select(func.count(MobileSession.id))
    list_stmt = select(MobileSession).order_by(MobileSession.last_active_at.desc())
    if where is not None:
        count_stmt = count_stmt.where(where)
        list_stmt = list_stmt.where(where)

    total = (await db.execute(count_stmt)).scalar() or 0
    result = await db.execute(list_stmt.limit(limit).offset((page - 1) * limit))
    return list(result.scalars().all()), total


async def session_stats(db: AsyncSession) -> dict:
    """Aggregated counts for the admin dashboard."""
    active = MobileSession.is_active.is_(True)
    today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    total_sessions = (await db.execute(select(func.count(MobileSession.id)))).scalar() or 0
    active_sessions = (await db.execute(
        select(func.count(MobileSession.id)).where(active)
    )).scalar() or 0
    active_devices = (await db.execute(
        select(func.count(func.distinct(MobileSession.device_id))).where(active)
    )).scalar() or 0
    with_push_token = (await db.execute(
        select(func.count(MobileSession.id)).where(active, MobileSession.push_token.is_not(None))
    )).scalar() or 0
    push_sent_today = (await db.execute(
        select(func.coalesce(func.sum(PushNotification.sent_count), 0))
        .where(PushNotification.sent_at >= today_start)
    )).scalar() or 0

    breakdown = await db.execute(
        select(MobileSession.platform, func.count(MobileSession.id))
        .where(active)
        .group_by(MobileSession.platform)
    )

    return {
        "totalSessions": total_sessions,
        "activeSessions": active_sessions,
        "activeDevices": active_devices,
        "pushSentToday": push_sent_today,
        "withPushToken": with_push_token,
        "platformBreakdown": {platform: count for platform, count in breakdown.all()},
    }
