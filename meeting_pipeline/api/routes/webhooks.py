import json
import logging
from typing import Any

from fastapi import APIRouter, Request, Response

from meeting_pipeline.api.request_auth import extract_shared_secret
from meeting_pipeline.core.config import get_settings
from meeting_pipeline.schemas.webhook import FathomWebhookResponse
from meeting_pipeline.services.errors import PayloadValidationError
from meeting_pipeline.services.webhook_service import FathomWebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/fathom", response_model=FathomWebhookResponse)
async def receive_fathom_webhook(request: Request, response: Response) -> FathomWebhookResponse:
    payload, raw_body = await _load_payload_and_raw_body(request)
    logger.info(
        "Webhook received provider=fathom path=%s has_signature=%s",
        str(request.url.path),
        bool(request.headers.get("x-webhook-signature")),
    )
    settings = get_settings()
    service = FathomWebhookService(settings)
    body, status_code = service.process_webhook(
        payload=payload,
        raw_body=raw_body,
        signature=request.headers.get("x-webhook-signature"),
        shared_secret=extract_shared_secret(request, "x-webhook-secret"),
    )
    response.status_code = status_code
    return body


async def _load_payload_and_raw_body(request: Request) -> tuple[dict[str, Any], bytes]:
    raw_body = await request.body()
    try:
        parsed_payload = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise PayloadValidationError("Request body must be valid JSON.") from exc

    if not isinstance(parsed_payload, dict):
        raise PayloadValidationError("Request body must be a JSON object.")

    return parsed_payload, raw_body
