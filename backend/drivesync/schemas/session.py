"""Session schemas for API."""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class SessionRegister(BaseModel):
    """Session hand-off from the login flow."""
    user_id: str = Field(..., alias="userId", min_length=1)
    device_id: str = Field(..., alias="deviceId", min_length=1)
    platform: str = Field(..., pattern="^(ios|android)$")
    push_token: Optional[str] = Field(None, alias="pushToken")
    user_name: Optional[str] = Field(None, alias="userName")
    user_email: Optional[str] = Field(None, alias="userEmail")
    device_name: Optional[str] = Field(None, alias="deviceName")
    app_version: Optional[str] = Field(None, alias="appVersion")

    class Config:
        populate_by_name = True


class PushTokenUpdate(BaseModel):
    """Set, replace or clear (null) the push token of the current session."""
    push_token: Optional[str] = Field(None, alias="pushToken")

    class Config:
        populate_by_name = True


class SessionResponse(BaseModel):
    """Session in API responses."""
    id: str
    user_id: str = Field(..., alias="userId")
    user_name: Optional[str] = Field(None, alias="userName")
    user_email: Optional[str] = Field(None, alias="userEmail")
    device_id: str = Field(..., alias="deviceId")
    device_name: Optional[str] = Field(None, alias="deviceName")
    platform: str
    app_version: Optional[str] = Field(None, alias="appVersion")
    push_token: Optional[str] = Field(None, alias="pushToken")
    is_active: bool = Field(..., alias="isActive")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    last_active_at: Optional[datetime] = Field(None, alias="lastActiveAt")
    last_sync_at: Optional[datetime] = Field(None, alias="lastSyncAt")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    end_reason: Optional[str] = Field(None, alias="endReason")

    class Config:
        from_attributes = True
        populate_by_name = True


class SessionPage(BaseModel):
    """Paginated session listing."""
    sessions: List[SessionResponse]
    total: int
    page: int
    limit: int
    total_pages: int = Field(..., alias="totalPages")

    class Config:
        populate_by_name = True
