import json
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, request

from meeting_pipeline.services.errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamTransientError,
)

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = frozenset({401, 403})
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise UpstreamError("Upstream returned invalid JSON.", upstream_status=self.status) from exc


class JsonHttpClient:
    """urllib wrapper with bounded exponential backoff for 408/429/5xx and network errors."""

    def __init__(
        self,
        *,
        service_name: str,
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetingIngestionPipeline/1.0",
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
    ) -> None:
        self.service_name = service_name
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_attempts = max(max_attempts, 1)
        self.initial_backoff_seconds = initial_backoff_seconds

    def get_json(self, url: str, *, headers: Mapping[str, str] | None = None) -> Any:
        return self.send("GET", url, headers=headers).json()

    def post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        merged_headers = {"Content-Type": "application/json"}
        merged_headers.update(headers or {})
        body = json.dumps(payload).encode("utf-8")
        return self.send("POST", url, headers=merged_headers, body=body).json()

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> HttpResponse:
        request_headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        request_headers.update(headers or {})
        req = request.Request(url, data=body, headers=request_headers, method=method)

        last_error: UpstreamTransientError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    return HttpResponse(status=getattr(response, "status", 200), body=response.read())
            except error.HTTPError as exc:
                response_body = exc.read().decode("utf-8", errors="ignore")
                message = (
                    f"{self.service_name} API HTTP {exc.code}: "
                    f"{response_body or 'empty response body'}"
                )
                if exc.code in AUTH_STATUS_CODES:
                    raise UpstreamAuthError(message, upstream_status=exc.code) from exc
                if exc.code not in RETRYABLE_STATUS_CODES:
                    raise UpstreamError(message, upstream_status=exc.code) from exc
                last_error = UpstreamTransientError(message, upstream_status=exc.code)
            except TimeoutError:
                last_error = UpstreamTransientError(f"{self.service_name} API request timed out.")
            except RemoteDisconnected:
                last_error = UpstreamTransientError(
                    f"{self.service_name} API connection was closed before sending a response.",
                )
            except error.URLError as exc:
                last_error = UpstreamTransientError(
                    f"{self.service_name} API connection error: {exc.reason}",
                )

            if attempt >= self.max_attempts:
                break
            delay = self.backoff_delay(attempt)
            logger.warning(
                "Upstream request failed service=%s method=%s attempt=%s retry_in=%.2fs error=%s",
                self.service_name,
                method,
                attempt,
                delay,
                last_error,
            )
            sleep(delay)

        if last_error is None:
            raise UpstreamTransientError(f"{self.service_name} API request failed.")
        raise last_error

    def backoff_delay(self, attempt: int) -> float:
        base_delay = self.initial_backoff_seconds * (2 ** (attempt - 1))
        return base_delay + random.uniform(0, self.initial_backoff_seconds)
