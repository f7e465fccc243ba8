"""Sync queue schemas."""
from typing import Optional, List, Any
from pydantic import BaseModel, Field


class SyncOperationIn(BaseModel):
    """One mutation queued by the client. Payloads are opaque."""
    operation: str = Field(..., min_length=1)
    entity_type: str = Field(..., alias="entityType", min_length=1)
    entity_id: Optional[str] = Field(None, alias="entityId")
    payload: Any = None

    class Config:
        populate_by_name = True


class SyncQueueRequest(BaseModel):
    operations: List[SyncOperationIn] = Field(..., min_length=1)
    process: bool = False  # Drain the queue right after storing
