import logging

from fastapi import APIRouter, Response, status

from meeting_pipeline.core.config import get_settings
from meeting_pipeline.schemas.sync import SyncRequest, SyncResponse
from meeting_pipeline.services.sync_engine import FathomSyncService

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger(__name__)


@router.post("/fathom", response_model=SyncResponse)
def run_fathom_sync(payload: SyncRequest, response: Response) -> SyncResponse:
    settings = get_settings()
    service = FathomSyncService(settings)
    logger.info("Sync requested user_id=%s sync_type=%s", payload.user_id, payload.sync_type.value)
    result = service.run_sync(
        user_id=payload.user_id,
        sync_type=payload.sync_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        call_id=payload.call_id,
        limit=payload.limit,
        webhook_payload=payload.webhook_payload,
    )
    if not result.success:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return result
