from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class IndexItemStatus(StrEnum):
    indexed = "indexed"
    unchanged = "unchanged"
    removed = "removed"
    failed = "failed"
    dead_lettered = "dead_lettered"


class IndexProcessRequest(BaseModel):
    user_id: str | None = None
    limit: int | None = Field(default=None, ge=1)


class IndexItemResult(BaseModel):
    queue_item_id: str
    meeting_id: str
    user_id: str
    status: IndexItemStatus
    attempts: int
    file_name: str | None = None
    error: str | None = None


class IndexProcessResponse(BaseModel):
    success: bool = True
    processed: int
    indexed: int
    unchanged: int
    removed: int
    failed: int
    results: list[IndexItemResult] = Field(default_factory=list)


class IndexEnqueueRequest(BaseModel):
    meeting_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    priority: int = 0


class IndexEnqueueResponse(BaseModel):
    success: bool = True
    queued: bool
    queue_item_id: str | None = None
    already_queued: bool = False
    reason: str | None = None


class DeadLetterItem(BaseModel):
    id: str
    meeting_id: str
    user_id: str
    attempts: int
    max_attempts: int
    priority: int
    error_message: str | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime


class DeadLettersResponse(BaseModel):
    items: list[DeadLetterItem]
