from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    data_store: str
    webhook_signature_required: bool
    file_search_configured: bool
    timestamp: datetime
