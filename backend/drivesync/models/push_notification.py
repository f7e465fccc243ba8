"""PushNotification model - log of dispatch attempts."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON

from ..database import Base


class PushNotification(Base):
    """Summary of one dispatch call through the push gateway.

    Counts are fixed at write time. Receipt reconciliation only stamps
    receipts_checked_at and appends to diagnostics.
    """

    __tablename__ = "push_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_type = Column(String, nullable=False)  # all, user, device, platform
    target_id = Column(String, nullable=True)  # NULL for 'all'
    title = Column(String, nullable=False)
    body = Column(String, nullable=False)
    data = Column(JSON, nullable=True)
    status = Column(String, nullable=False)  # sent, partial, failed
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    receipt_ids = Column(JSON, nullable=True)  # list of receipt ids
    receipt_tokens = Column(JSON, nullable=True)  # receipt id -> push token
    dead_tokens = Column(JSON, nullable=True)  # tokens whose ticket said DeviceNotRegistered
    diagnostics = Column(JSON, nullable=True)  # append-only reconciliation notes
    sent_at = Column(DateTime, default=datetime.utcnow, index=True)
    receipts_checked_at = Column(DateTime, nullable=True)
