from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class SyncType(StrEnum):
    initial = "initial"
    incremental = "incremental"
    manual = "manual"
    webhook = "webhook"
    all_time = "all_time"


class SyncRequest(BaseModel):
    user_id: str = Field(min_length=1)
    sync_type: SyncType = SyncType.incremental
    start_date: datetime | None = None
    end_date: datetime | None = None
    call_id: str | None = None
    limit: int | None = Field(default=None, ge=1, le=100)
    webhook_payload: dict[str, Any] | None = None


class CallSyncError(BaseModel):
    call_id: str | None = None
    error: str


class SyncResponse(BaseModel):
    success: bool = True
    user_id: str
    sync_type: SyncType
    meetings_synced: int = 0
    total_meetings_found: int = 0
    errors: list[CallSyncError] = Field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    meeting_id: str | None = None
    transcript_available: bool | None = None
