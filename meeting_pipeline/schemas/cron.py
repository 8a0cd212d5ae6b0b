from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class CronSyncPriority(StrEnum):
    high = "high"
    normal = "normal"


class CronOutcome(StrEnum):
    success = "success"
    failed = "failed"
    skipped = "skipped"


class CronIntegrationResult(BaseModel):
    user_id: str
    integration_id: str | None = None
    priority_score: float
    gap_count: int = 0
    sync_type: str
    reason: str
    priority: CronSyncPriority
    status: CronOutcome
    meetings_synced: int = 0
    total_meetings_found: int = 0
    error_count: int = 0
    error: str | None = None


class CronRunResponse(BaseModel):
    success: bool = True
    run_id: str
    integrations_found: int
    processed: int
    succeeded: int
    failed: int
    skipped: int
    duration_ms: int
    results: list[CronIntegrationResult] = Field(default_factory=list)


class CronJobLogEntry(BaseModel):
    id: str
    run_id: str | None = None
    job_name: str | None = None
    user_id: str | None = None
    status: str
    message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class CronJobLogsResponse(BaseModel):
    items: list[CronJobLogEntry]
