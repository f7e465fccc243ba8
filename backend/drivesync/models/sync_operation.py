"""SyncOperation model - durable queue of client mutations."""
import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from ..database import Base

# Queue statuses
PENDING = "pending"
SYNCING = "syncing"
SYNCED = "synced"
FAILED = "failed"

OPERATION_KINDS = ("booking_create", "feedback_submit", "lesson_progress", "quiz_attempt")


class SyncOperation(Base):
    """A client-originated mutation awaiting application on the server.

    Rows are never deleted by processing; synced and failed rows stay for
    status reporting until retention pruning removes them.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_session_status", "session_id", "status"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    status = Column(String, default=PENDING, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    error_message = Column(String, nullable=True)
    error_details = Column(JSON, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
