from datetime import UTC, datetime

from meeting_pipeline.core.config import Settings
from meeting_pipeline.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.app_env,
            data_store=self.settings.data_store,
            webhook_signature_required=bool(self.settings.fathom_webhook_secret),
            file_search_configured=bool(self.settings.gemini_api_key),
            timestamp=datetime.now(UTC),
        )
