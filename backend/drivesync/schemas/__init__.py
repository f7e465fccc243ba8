"""Pydantic schemas for API request/response models."""
from .session import (
    SessionRegister,
    PushTokenUpdate,
    SessionResponse,
    SessionPage,
)
from .push import (
    PushRequest,
    TemplatePushRequest,
    DispatchSummary,
    PushRecordResponse,
)
from .notification import (
    PollNotification,
    PollData,
    MarkReadRequest,
)
from .sync import (
    SyncOperationIn,
    SyncQueueRequest,
)

__all__ = [
    "SessionRegister",
    "PushTokenUpdate",
    "SessionResponse",
    "SessionPage",
    "PushRequest",
    "TemplatePushRequest",
    "DispatchSummary",
    "PushRecordResponse",
    "PollNotification",
    "PollData",
    "MarkReadRequest",
    "SyncOperationIn",
    "SyncQueueRequest",
]
