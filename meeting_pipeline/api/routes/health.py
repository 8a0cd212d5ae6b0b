from fastapi import APIRouter

from meeting_pipeline.core.config import get_settings
from meeting_pipeline.schemas.health import HealthResponse
from meeting_pipeline.services.health_service import HealthService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def healthcheck() -> HealthResponse:
    settings = get_settings()
    service = HealthService(settings)
    return service.get_status()
