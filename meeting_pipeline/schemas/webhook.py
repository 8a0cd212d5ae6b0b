from pydantic import BaseModel


class FathomWebhookResponse(BaseModel):
    success: bool
    request_id: str
    recording_id: str | None = None
    user_id: str | None = None
    meeting_id: str | None = None
    transcript_available: bool = False
    duration_ms: int
    error: str | None = None
