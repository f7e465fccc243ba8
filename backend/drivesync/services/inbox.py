"""Notification inbox - the store behind the poll endpoint."""
import logging
from datetime import datetime
from typing import Optional, List, Iterable

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import MobileSession, UserNotification
from ..models.user_notification import SESSION_KICKED
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

KICK_TITLE = "Session avslutad"
KICK_BODY = "Din session har avslutats av en administratör."


async def create_notification(
    db: AsyncSession,
    user_id: str,
    notification_type: str,
    title: str,
    body: str,
    data: Optional[dict] = None,
    session_id: Optional[str] = None,
    commit: bool = True,
) -> UserNotification:
    """Store a notification for a user (or one of their sessions)."""
    now = datetime.utcnow()
    notification = UserNotification(
        user_id=user_id,
        session_id=session_id,
        notification_type=notification_type,
        title=title,
        body=body,
        data=data or {},
        sent_at=now,
        created_at=now,
    )
    db.add(notification)
    if commit:
        await retry_on_lock(db.commit)
    return notification


async def notify_users(
    db: AsyncSession,
    user_ids: Iterable[str],
    notification_type: str,
    title: str,
    body: str,
    data: Optional[dict] = None,
) -> int:
    """Fan a notification out to several users' inboxes in one commit."""
    count = 0
    for user_id in dict.fromkeys(user_ids):
        await create_notification(db, user_id, notification_type, title, body, data, commit=False)
        count += 1
    if count:
        await retry_on_lock(db.commit)
    return count


async def record_kick(db: AsyncSession, session: MobileSession) -> UserNotification:
    """Leave a kick notice that only the kicked session will see."""
    return await create_notification(
        db,
        user_id=session.user_id,
        notification_type=SESSION_KICKED,
        title=KICK_TITLE,
        body=KICK_BODY,
        data={"action": "force_logout"},
        session_id=session.id,
    )


def _visible_to(session: MobileSession):
    """Notifications a session may see.

    Active sessions see user-wide notices plus their own; a kicked session
    only sees its own unread kick notice.
    """
    if not session.is_active:
        return _unread_kick(session)
    return and_(
        UserNotification.user_id == session.user_id,
        or_(UserNotification.session_id.is_(None), UserNotification.session_id == session.id),
    )


def _unread_kick(session: MobileSession):
    return and_(
        UserNotification.session_id == session.id,
        UserNotification.notification_type == SESSION_KICKED,
        UserNotification.read_at.is_(None),
    )


async def has_pending_kick(db: AsyncSession, session: MobileSession) -> bool:
    result = await db.execute(select(func.count(UserNotification.id)).where(_unread_kick(session)))
    return (result.scalar() or 0) > 0


async def pending_kicks(db: AsyncSession, session: MobileSession) -> List[UserNotification]:
    """Unread kick notices of the session, oldest first."""
    result = await db.execute(
        select(UserNotification).where(_unread_kick(session)).order_by(UserNotification.created_at)
    )
    return list(result.scalars().all())


async def poll_notifications(
    db: AsyncSession,
    session: MobileSession,
    since: Optional[datetime] = None,
    limit: int = 20,
    unread_only: bool = True,
) -> tuple[List[UserNotification], int, bool]:
    """Return (notifications, unread_count, has_kick) for a poll.

    An unread kick notice is returned on every poll until it is read,
    whatever the `since` cursor says.
    """
    visible = _visible_to(session)
    kicks = await pending_kicks(db, session)

    stmt = select(UserNotification).where(visible)
    if unread_only:
        stmt = stmt.where(UserNotification.read_at.is_(None))
    if since is not None:
        stmt = stmt.where(UserNotification.created_at > since)
    if kicks:
        stmt = stmt.where(UserNotification.id.not_in([k.id for k in kicks]))
    result = await db.execute(
        stmt.order_by(UserNotification.created_at.desc()).limit(max(limit - len(kicks), 0))
    )
    notifications = kicks + list(result.scalars().all())

    unread = (await db.execute(
        select(func.count(UserNotification.id)).where(visible, UserNotification.read_at.is_(None))
    )).scalar() or 0

    return notifications, unread, bool(kicks)


async def mark_read(db: AsyncSession, session: MobileSession, ids: List[str]) -> int:
    """Mark the session's own unread notifications as read, returning how many changed."""
    if not ids:
        return 0
    result = await db.execute(
        update(UserNotification)
        .where(
            _visible_to(session),
            UserNotification.id.in_(ids),
            UserNotification.read_at.is_(None),
        )
        .values(read_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await retry_on_lock(db.commit)
    return result.rowcount or 0
