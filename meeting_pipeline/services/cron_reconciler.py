import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from time import monotonic
from typing import Any

from meeting_pipeline.core.config import Settings
from meeting_pipeline.schemas.cron import (
    CronIntegrationResult,
    CronOutcome,
    CronRunResponse,
    CronSyncPriority,
)
from meeting_pipeline.schemas.sync import SyncType
from meeting_pipeline.services.cron_job_log_store import CronJobLogStore, create_cron_job_log_store
from meeting_pipeline.services.errors import PipelineError, SyncInProgressError
from meeting_pipeline.services.fathom_payload import extract_recording_id
from meeting_pipeline.services.integration_store import IntegrationStore, create_integration_store
from meeting_pipeline.services.meeting_store import MeetingStore, create_meeting_store
from meeting_pipeline.services.sync_engine import FathomSyncService
from meeting_pipeline.services.sync_state_store import SyncStateStore, create_sync_state_store

logger = logging.getLogger(__name__)

CRON_JOB_NAME = "fathom_sync"
GAP_BASE_SCORE = 100.0
GAP_SCORE_PER_CALL = 10.0
ERROR_SCORE_PER_FAILURE = 20.0
MAX_STALENESS_SCORE = 48.0
NEVER_SYNCED_SCORE = 50.0


@dataclass(frozen=True)
class IntegrationHealth:
    user_id: str
    integration_id: str | None
    gap_count: int
    error_count: int
    last_successful_sync: datetime | None

    def hours_since_last_sync(self, now: datetime) -> float | None:
        if self.last_successful_sync is None:
            return None
        elapsed = now - self.last_successful_sync
        return max(elapsed.total_seconds() / 3600, 0.0)


@dataclass(frozen=True)
class SyncPlan:
    label: str
    sync_type: SyncType
    reason: str
    priority: CronSyncPriority


def calculate_priority_score(health: IntegrationHealth, now: datetime) -> float:
    score = 0.0
    if health.gap_count > 0:
        score += GAP_BASE_SCORE + GAP_SCORE_PER_CALL * health.gap_count
    score += ERROR_SCORE_PER_FAILURE * health.error_count
    hours_since_sync = health.hours_since_last_sync(now)
    if hours_since_sync is None:
        score += NEVER_SYNCED_SCORE
    else:
        score += min(hours_since_sync, MAX_STALENESS_SCORE)
    return score


def decide_sync_plan(health: IntegrationHealth, now: datetime, stale_after_hours: float) -> SyncPlan:
    # First matching rule wins.
    if health.gap_count > 0:
        return SyncPlan(
            label="gap_recovery",
            sync_type=SyncType.manual,
            reason=f"{health.gap_count} recent calls missing locally",
            priority=CronSyncPriority.high,
        )
    hours_since_sync = health.hours_since_last_sync(now)
    if hours_since_sync is None:
        return SyncPlan(
            label=SyncType.manual.value,
            sync_type=SyncType.manual,
            reason="no successful sync yet",
            priority=CronSyncPriority.high,
        )
    if hours_since_sync > stale_after_hours:
        return SyncPlan(
            label=SyncType.manual.value,
            sync_type=SyncType.manual,
            reason=f"last successful sync {hours_since_sync:.1f}h ago",
            priority=CronSyncPriority.high,
        )
    return SyncPlan(
        label=SyncType.incremental.value,
        sync_type=SyncType.incremental,
        reason="routine catch-up",
        priority=CronSyncPriority.normal,
    )


@dataclass(frozen=True)
class _Assessment:
    health: IntegrationHealth
    score: float
    plan: SyncPlan


class CronReconciler:
    """Catch-up path for missed webhooks."""

    def __init__(
        self,
        settings: Settings,
        *,
        sync_service: FathomSyncService | None = None,
        integration_store: IntegrationStore | None = None,
        sync_state_store: SyncStateStore | None = None,
        meeting_store: MeetingStore | None = None,
        cron_job_log_store: CronJobLogStore | None = None,
        clock: Callable[[], datetime] | None = None,
        timer: Callable[[], float] = monotonic,
    ) -> None:
        self.settings = settings
        self.integration_store = integration_store or create_integration_store(settings)
        self.sync_state_store = sync_state_store or create_sync_state_store(settings)
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.cron_job_log_store = cron_job_log_store or create_cron_job_log_store(settings)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.sync_service = sync_service or FathomSyncService(
            settings,
            integration_store=self.integration_store,
            sync_state_store=self.sync_state_store,
            meeting_store=self.meeting_store,
            clock=self.clock,
        )
        self.timer = timer

    def run(self) -> CronRunResponse:
        run_id = uuid.uuid4().hex[:12]
        started_at = self.timer()
        now = self.clock()
        integrations = self.integration_store.list_active_integrations()
        logger.info("Cron run started run_id=%s integrations=%s", run_id, len(integrations))

        assessments = []
        for integration in integrations:
            within_budget = self.timer() - started_at < self.settings.cron_time_budget_seconds
            health = self.assess_integration(integration, now, detect_gaps=within_budget)
            assessments.append(
                _Assessment(
                    health=health,
                    score=calculate_priority_score(health, now),
                    plan=decide_sync_plan(health, now, self.settings.cron_stale_after_hours),
                ),
            )
        assessments.sort(key=lambda assessment: assessment.score, reverse=True)

        results: list[CronIntegrationResult] = []
        processed = 0
        for assessment in assessments:
            elapsed = self.timer() - started_at
            if processed >= self.settings.cron_max_integrations_per_run:
                result = self._skipped(assessment, "integration cap reached for this run")
            elif elapsed >= self.settings.cron_time_budget_seconds:
                result = self._skipped(assessment, "time budget exhausted")
            else:
                processed += 1
                result = self._sync_integration(assessment, run_id)
            results.append(result)
            self._append_log(run_id, result)

        response = CronRunResponse(
            run_id=run_id,
            integrations_found=len(integrations),
            processed=processed,
            succeeded=sum(1 for result in results if result.status == CronOutcome.success),
            failed=sum(1 for result in results if result.status == CronOutcome.failed),
            skipped=sum(1 for result in results if result.status == CronOutcome.skipped),
            duration_ms=int((self.timer() - started_at) * 1000),
            results=results,
        )
        self.cron_job_log_store.append(
            {
                "run_id": run_id,
                "job_name": CRON_JOB_NAME,
                "user_id": None,
                "status": "completed",
                "message": (
                    f"Processed {response.processed} of {response.integrations_found} integrations: "
                    f"{response.succeeded} succeeded, {response.failed} failed, "
                    f"{response.skipped} skipped"
                ),
                "details": {
                    "integrations_found": response.integrations_found,
                    "processed": response.processed,
                    "succeeded": response.succeeded,
                    "failed": response.failed,
                    "skipped": response.skipped,
                    "duration_ms": response.duration_ms,
                },
            },
        )
        logger.info(
            "Cron run completed run_id=%s processed=%s succeeded=%s failed=%s skipped=%s duration_ms=%s",
            run_id,
            response.processed,
            response.succeeded,
            response.failed,
            response.skipped,
            response.duration_ms,
        )
        return response

    def assess_integration(
        self,
        integration: Mapping[str, Any],
        now: datetime,
        *,
        detect_gaps: bool = True,
    ) -> IntegrationHealth:
        user_id = str(integration["user_id"])
        state = self.sync_state_store.get_state(user_id) or {}
        last_successful_sync = state.get("last_sync_completed_at")
        if isinstance(last_successful_sync, datetime) and last_successful_sync.tzinfo is None:
            last_successful_sync = last_successful_sync.replace(tzinfo=UTC)
        return IntegrationHealth(
            user_id=user_id,
            integration_id=str(integration.get("_id")) if integration.get("_id") else None,
            gap_count=self.detect_gaps(integration, now) if detect_gaps else 0,
            error_count=int(state.get("error_count") or 0),
            last_successful_sync=last_successful_sync if isinstance(last_successful_sync, datetime) else None,
        )

    def detect_gaps(self, integration: Mapping[str, Any], now: datetime) -> int:
        """Count recently listed upstream calls that have no local meeting."""
        user_id = integration.get("user_id")
        try:
            client = self.sync_service.fathom_client_factory(integration)
            calls = client.list_calls(
                start_date=now - timedelta(hours=self.settings.cron_gap_lookback_hours),
                end_date=now,
                limit=self.settings.fathom_page_size,
                offset=0,
            )
        except PipelineError as exc:
            logger.warning("Gap detection failed user_id=%s error=%s", user_id, exc)
            return 0

        upstream_ids = {recording_id for recording_id in map(extract_recording_id, calls) if recording_id}
        if not upstream_ids:
            return 0
        existing_ids = self.meeting_store.find_existing_external_ids(upstream_ids)
        gap_count = len(upstream_ids - existing_ids)
        if gap_count:
            logger.info("Gaps detected user_id=%s gap_count=%s", user_id, gap_count)
        return gap_count

    def _sync_integration(self, assessment: _Assessment, run_id: str) -> CronIntegrationResult:
        health = assessment.health
        plan = assessment.plan
        try:
            response = self.sync_service.run_sync(user_id=health.user_id, sync_type=plan.sync_type)
        except SyncInProgressError as exc:
            return self._skipped(assessment, str(exc))
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            if isinstance(exc, PipelineError):
                logger.warning(
                    "Cron sync failed run_id=%s user_id=%s sync_type=%s error=%s",
                    run_id,
                    health.user_id,
                    plan.label,
                    error_message,
                )
            else:
                logger.exception(
                    "Cron sync crashed run_id=%s user_id=%s sync_type=%s",
                    run_id,
                    health.user_id,
                    plan.label,
                )
            error_count = self.sync_state_store.increment_error_count(
                user_id=health.user_id,
                error_message=error_message,
            )
            return self._result(
                assessment,
                status=CronOutcome.failed,
                error=error_message,
                error_count=error_count,
            )

        self.sync_state_store.reset_error_count(health.user_id)
        logger.info(
            "Cron sync succeeded run_id=%s user_id=%s sync_type=%s reason=%s meetings_synced=%s "
            "total_meetings_found=%s call_errors=%s",
            run_id,
            health.user_id,
            plan.label,
            plan.reason,
            response.meetings_synced,
            response.total_meetings_found,
            len(response.errors),
        )
        return self._result(
            assessment,
            status=CronOutcome.success,
            meetings_synced=response.meetings_synced,
            total_meetings_found=response.total_meetings_found,
        )

    def _skipped(self, assessment: _Assessment, reason: str) -> CronIntegrationResult:
        logger.info("Cron sync skipped user_id=%s reason=%s", assessment.health.user_id, reason)
        return self._result(
            assessment,
            status=CronOutcome.skipped,
            error=reason,
            error_count=assessment.health.error_count,
        )

    def _result(
        self,
        assessment: _Assessment,
        *,
        status: CronOutcome,
        meetings_synced: int = 0,
        total_meetings_found: int = 0,
        error: str | None = None,
        error_count: int = 0,
    ) -> CronIntegrationResult:
        health = assessment.health
        return CronIntegrationResult(
            user_id=health.user_id,
            integration_id=health.integration_id,
            priority_score=round(assessment.score, 2),
            gap_count=health.gap_count,
            sync_type=assessment.plan.label,
            reason=assessment.plan.reason,
            priority=assessment.plan.priority,
            status=status,
            meetings_synced=meetings_synced,
            total_meetings_found=total_meetings_found,
            error_count=error_count,
            error=error,
        )

    def _append_log(self, run_id: str, result: CronIntegrationResult) -> None:
        if result.status == CronOutcome.success:
            message = (
                f"{result.sync_type} sync ({result.reason}) synced {result.meetings_synced} "
                f"of {result.total_meetings_found} meetings"
            )
        else:
            message = result.error
        self.cron_job_log_store.append(
            {
                "run_id": run_id,
                "job_name": CRON_JOB_NAME,
                "user_id": result.user_id,
                "status": result.status.value,
                "message": message,
                "details": result.model_dump(mode="json"),
            },
        )
