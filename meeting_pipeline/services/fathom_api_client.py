import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib import parse

from meeting_pipeline.services.errors import UpstreamAuthError, UpstreamError
from meeting_pipeline.services.fathom_payload import normalize_summary, normalize_transcript
from meeting_pipeline.services.http_client import JsonHttpClient

logger = logging.getLogger(__name__)

CALL_LIST_KEYS = ("items", "calls", "meetings", "data")


class FathomApiClient:
    def __init__(
        self,
        api_url: str,
        access_token: str,
        timeout_seconds: float = 15.0,
        user_agent: str = "MeetingIngestionPipeline/1.0",
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
        http_client: JsonHttpClient | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token
        self.http_client = http_client or JsonHttpClient(
            service_name="Fathom",
            timeout_seconds=timeout_seconds,
            user_agent=user_agent,
            max_attempts=max_attempts,
            initial_backoff_seconds=initial_backoff_seconds,
        )

    def list_calls(
        self,
        *,
        start_date: datetime | None,
        end_date: datetime | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        query: dict[str, str] = {
            "limit": str(limit),
            "offset": str(offset),
            "sort_by": "start_time",
            "sort_order": "desc",
        }
        if start_date:
            query["start_date"] = _format_timestamp(start_date)
        if end_date:
            query["end_date"] = _format_timestamp(end_date)

        payload = self.http_client.get_json(
            f"{self.api_url}/calls?{parse.urlencode(query)}",
            headers=self._auth_headers(),
        )
        return _extract_call_list(payload)

    def fetch_call(self, call_id: str) -> dict[str, Any]:
        payload = self.http_client.get_json(
            f"{self.api_url}/calls/{parse.quote(call_id, safe='')}",
            headers=self._auth_headers(),
        )
        if isinstance(payload, Mapping) and isinstance(payload.get("call"), Mapping):
            payload = payload["call"]
        if not isinstance(payload, Mapping):
            raise UpstreamError(f"Fathom call {call_id} response is not a JSON object.")
        return dict(payload)

    def fetch_call_analytics(self, call_id: str) -> dict[str, Any] | None:
        payload = self._get_while_processing(f"calls/{parse.quote(call_id, safe='')}/analytics", call_id)
        if not isinstance(payload, Mapping):
            return None
        return dict(payload)

    def fetch_transcript(self, recording_id: str) -> str | None:
        payload = self._get_while_processing(
            f"recordings/{parse.quote(recording_id, safe='')}/transcript",
            recording_id,
        )
        return normalize_transcript(payload)

    def fetch_summary(self, recording_id: str) -> str | None:
        payload = self._get_while_processing(
            f"recordings/{parse.quote(recording_id, safe='')}/summary",
            recording_id,
        )
        return normalize_summary(payload)

    def _get_while_processing(self, path: str, call_id: str) -> Any:
        # Fathom answers 404 until a fresh recording is processed; only auth failures surface.
        try:
            return self.http_client.get_json(f"{self.api_url}/{path}", headers=self._auth_headers())
        except UpstreamAuthError:
            raise
        except UpstreamError as exc:
            logger.info("Fathom resource unavailable call_id=%s path=%s reason=%s", call_id, path, exc)
            return None

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


def _extract_call_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [dict(item) for item in payload if isinstance(item, Mapping)]
    if isinstance(payload, Mapping):
        for key in CALL_LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return [dict(item) for item in value if isinstance(item, Mapping)]
        logger.warning("Unknown Fathom call list structure keys=%s", sorted(payload.keys()))
    return []


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
