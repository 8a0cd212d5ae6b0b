from fastapi import APIRouter, Request

from meeting_pipeline.api.request_auth import require_shared_secret
from meeting_pipeline.core.config import get_settings
from meeting_pipeline.schemas.cron import CronJobLogEntry, CronJobLogsResponse, CronRunResponse
from meeting_pipeline.services.cron_job_log_store import create_cron_job_log_store
from meeting_pipeline.services.cron_reconciler import CronReconciler

router = APIRouter(prefix="/cron", tags=["cron"])


@router.post("/fathom-sync", response_model=CronRunResponse)
def run_fathom_cron(request: Request) -> CronRunResponse:
    settings = get_settings()
    require_shared_secret(request, header_name="x-cron-secret", expected_secret=settings.cron_secret)
    reconciler = CronReconciler(settings)
    return reconciler.run()


@router.get("/logs", response_model=CronJobLogsResponse)
def list_cron_logs(limit: int = 50, user_id: str | None = None) -> CronJobLogsResponse:
    settings = get_settings()
    store = create_cron_job_log_store(settings)
    entries = store.list_recent(limit=max(1, min(limit, 200)), user_id=user_id)
    return CronJobLogsResponse(
        items=[
            CronJobLogEntry(
                id=str(entry["_id"]),
                run_id=entry.get("run_id"),
                job_name=entry.get("job_name"),
                user_id=entry.get("user_id"),
                status=str(entry.get("status") or "unknown"),
                message=entry.get("message"),
                details=entry.get("details") or {},
                created_at=entry["created_at"],
            )
            for entry in entries
        ],
    )
