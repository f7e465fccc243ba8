"""Poll endpoint schemas."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class PollNotification(BaseModel):
    """Notification as returned to polling clients."""
    id: str
    notification_type: str = Field(..., alias="notificationType")
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    sent_at: Optional[datetime] = Field(None, alias="sentAt")
    read_at: Optional[datetime] = Field(None, alias="readAt")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True


class PollData(BaseModel):
    notifications: List[PollNotification]
    unread_count: int = Field(..., alias="unreadCount")
    has_kick: bool = Field(..., alias="hasKick")

    class Config:
        populate_by_name = True


class MarkReadRequest(BaseModel):
    notification_ids: List[str] = Field(..., alias="notificationIds")

    class Config:
        populate_by_name = True
