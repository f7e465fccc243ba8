"""UserNotification model - inbox entries served by the poll endpoint."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Index

from ..database import Base

SESSION_KICKED = "session_kicked"


class UserNotification(Base):
    """A notification discoverable by polling.

    session_id is set for notices aimed at one device (kicks); NULL means
    every session of the user sees it.
    """

    __tablename__ = "user_notifications"
    __table_args__ = (
        Index("ix_user_notifications_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    session_id = Column(String, nullable=True, index=True)
    notification_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    body = Column(String, nullable=False)
    data = Column(JSON, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
