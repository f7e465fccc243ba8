"""MobileSession model - one logged-in device and its push registration."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Index

from ..database import Base

PLATFORMS = ("ios", "android")


class MobileSession(Base):
    """An authenticated app session on a single device.

    The push token is optional (the user may have denied notification
    permission) and is cleared independently of the session when the push
    gateway reports the device as unregistered.
    """

    __tablename__ = "mobile_sessions"
    __table_args__ = (
        Index("ix_mobile_sessions_user_active", "user_id", "is_active"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    user_name = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    device_id = Column(String, nullable=False)
    device_name = Column(String, nullable=True)
    platform = Column(String, nullable=False)  # ios, android
    app_version = Column(String, nullable=True)
    push_token = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_active_at = Column(DateTime, default=datetime.utcnow)
    last_sync_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String, nullable=True)  # logout, kicked, expired
