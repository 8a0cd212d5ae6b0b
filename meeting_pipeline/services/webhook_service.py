import hashlib
import hmac
import logging
import uuid
from collections.abc import Mapping
from time import perf_counter
from typing import Any

from fastapi import status

from meeting_pipeline.core.config import Settings
from meeting_pipeline.schemas.webhook import FathomWebhookResponse
from meeting_pipeline.services.errors import (
    PayloadValidationError,
    PipelineError,
    WebhookSignatureError,
)
from meeting_pipeline.services.fathom_payload import extract_first_string, extract_recording_id
from meeting_pipeline.services.integration_store import IntegrationStore, create_integration_store
from meeting_pipeline.services.sync_engine import WEBHOOK_INDEX_PRIORITY, FathomSyncService
from meeting_pipeline.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)

OWNER_EMAIL_PATHS = ("recorded_by.email", "host_email", "owner.email")


class FathomWebhookService:
    def __init__(
        self,
        settings: Settings,
        *,
        sync_service: FathomSyncService | None = None,
        integration_store: IntegrationStore | None = None,
        user_store: UserStore | None = None,
    ) -> None:
        self.settings = settings
        self.sync_service = sync_service or FathomSyncService(settings)
        self.integration_store = integration_store or create_integration_store(settings)
        self.user_store = user_store or create_user_store(settings)

    def process_webhook(
        self,
        *,
        payload: Mapping[str, Any],
        raw_body: bytes | None = None,
        signature: str | None = None,
        shared_secret: str | None = None,
    ) -> tuple[FathomWebhookResponse, int]:
        """Sync the single call a webhook refers to.

        Returns the response body and its status code: 200 when the meeting is
        synced with a transcript, 202 when the transcript is not ready yet, the
        error's status for rejected payloads and 500 when the sync failed.
        Rejected events are dropped; the cron gap detection picks them up.
        """
        request_id = uuid.uuid4().hex[:12]
        started_at = perf_counter()
        recording_id: str | None = None
        user_id: str | None = None
        try:
            self._validate_auth(raw_body=raw_body, signature=signature, shared_secret=shared_secret)
            recording_id = extract_recording_id(payload)
            if not recording_id:
                raise PayloadValidationError("Webhook payload does not contain a recording id.")
            owner_email = extract_first_string(payload, OWNER_EMAIL_PATHS)
            if not owner_email:
                raise PayloadValidationError("Webhook payload does not contain recorded_by.email.")
            user_id = self.resolve_user_id(owner_email)
            if not user_id:
                raise PayloadValidationError(f"No user found for recorder email {owner_email}.")
            integration = self.sync_service.require_integration(user_id)
        except PipelineError as exc:
            logger.warning(
                "Webhook rejected request_id=%s recording_id=%s status_code=%s error=%s",
                request_id,
                recording_id,
                exc.status_code,
                exc,
            )
            return (
                FathomWebhookResponse(
                    success=False,
                    request_id=request_id,
                    recording_id=recording_id,
                    user_id=user_id,
                    duration_ms=_elapsed_ms(started_at),
                    error=str(exc),
                ),
                exc.status_code,
            )

        result = self.sync_service.sync_single_call(
            user_id=user_id,
            integration=integration,
            call_id=recording_id,
            call_payload=payload,
            index_priority=WEBHOOK_INDEX_PRIORITY,
        )
        response = FathomWebhookResponse(
            success=result.success,
            request_id=request_id,
            recording_id=recording_id,
            user_id=user_id,
            meeting_id=result.meeting_id,
            transcript_available=result.transcript_available,
            duration_ms=_elapsed_ms(started_at),
            error=result.error,
        )
        if not result.success:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        elif not result.transcript_available:
            status_code = status.HTTP_202_ACCEPTED
        else:
            status_code = status.HTTP_200_OK

        logger.info(
            "Webhook processed request_id=%s recording_id=%s user_id=%s meeting_id=%s "
            "status_code=%s duration_ms=%s",
            request_id,
            recording_id,
            user_id,
            result.meeting_id,
            status_code,
            response.duration_ms,
        )
        return response, status_code

    def resolve_user_id(self, email: str) -> str | None:
        integration = self.integration_store.find_active_integration_by_email(email)
        if integration:
            return str(integration["user_id"])
        user = self.user_store.get_user_by_email(email)
        if user:
            return str(user["_id"])
        return None

    def _validate_auth(
        self,
        *,
        raw_body: bytes | None,
        signature: str | None,
        shared_secret: str | None,
    ) -> None:
        expected_secret = self.settings.fathom_webhook_secret
        if not expected_secret:
            return
        if raw_body and signature and self._is_valid_hmac_signature(
            payload=raw_body,
            signature=signature,
            secret=expected_secret,
        ):
            return
        if shared_secret and hmac.compare_digest(shared_secret, expected_secret):
            return
        raise WebhookSignatureError("Invalid webhook signature.")

    def _is_valid_hmac_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        provided_signature = signature.strip()
        if not provided_signature:
            return False
        if provided_signature.startswith("sha256="):
            provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()

        computed_signature = hmac.new(
            key=secret.encode("utf-8"),
            msg=payload,
            digestmod=hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(computed_signature, provided_signature)


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)
