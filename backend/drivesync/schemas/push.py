"""Push dispatch schemas for the admin API."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class PushRequest(BaseModel):
    """Admin dispatch request."""
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    target_type: str = Field(..., alias="targetType", pattern="^(all|user|device|platform)$")
    target_id: Optional[str] = Field(None, alias="targetId")
    target_platform: Optional[str] = Field(None, alias="targetPlatform")
    data: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True


class TemplatePushRequest(BaseModel):
    """Dispatch of a predefined template."""
    template: str
    target_type: str = Field("all", alias="targetType", pattern="^(all|user)$")
    target_id: Optional[str] = Field(None, alias="targetId")
    params: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class DispatchSummary(BaseModel):
    """Outcome of a dispatch call."""
    sent: int
    failed: int
    errors: Optional[List[str]] = None


class PushRecordResponse(BaseModel):
    """One entry of the dispatch log."""
    id: int
    target_type: str = Field(..., alias="targetType")
    target_id: Optional[str] = Field(None, alias="targetId")
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    status: str
    sent_count: int = Field(..., alias="sentCount")
    failed_count: int = Field(..., alias="failedCount")
    receipt_ids: Optional[List[str]] = Field(None, alias="receiptIds")
    diagnostics: Optional[List[Dict[str, Any]]] = None
    sent_at: Optional[datetime] = Field(None, alias="sentAt")
    receipts_checked_at: Optional[datetime] = Field(None, alias="receiptsCheckedAt")

    class Config:
        from_attributes = True
        populate_by_name = True
