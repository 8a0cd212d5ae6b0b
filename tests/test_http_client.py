import io
import json
from urllib import error

import pytest

from meeting_pipeline.services.errors import UpstreamAuthError, UpstreamError, UpstreamTransientError
from meeting_pipeline.services.http_client import JsonHttpClient


class _MockResponse:
    def __init__(self, payload: object, status: int = 200) -> None:
        self._payload = json.dumps(payload).encode("utf-8")
        self.status = status

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


def _http_error(status_code: int, payload: dict[str, object]) -> error.HTTPError:
    return error.HTTPError(
        url="https://api.example.test/resource",
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(payload).encode("utf-8")),
    )


def test_json_http_client_retries_timeout_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}
    delays: list[float] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise TimeoutError("request timed out")
        return _MockResponse({"ok": True})

    monkeypatch.setattr("meeting_pipeline.services.http_client.sleep", delays.append)
    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example", max_attempts=3, initial_backoff_seconds=1.0)
    payload = client.get_json("https://api.example.test/resource")

    assert payload == {"ok": True}
    assert attempts["count"] == 2
    assert len(delays) == 1
    assert 1.0 <= delays[0] <= 2.0


def test_json_http_client_retries_server_errors_until_exhausted(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        raise _http_error(503, {"error": "unavailable"})

    monkeypatch.setattr("meeting_pipeline.services.http_client.sleep", lambda _: None)
    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example", max_attempts=3)
    with pytest.raises(UpstreamTransientError) as exc_info:
        client.get_json("https://api.example.test/resource")

    assert attempts["count"] == 3
    assert exc_info.value.upstream_status == 503
    assert "Example API HTTP 503" in str(exc_info.value)


def test_json_http_client_retries_rate_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise _http_error(429, {"error": "slow down"})
        return _MockResponse({"items": []})

    monkeypatch.setattr("meeting_pipeline.services.http_client.sleep", lambda _: None)
    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example", max_attempts=3)

    assert client.get_json("https://api.example.test/resource") == {"items": []}
    assert attempts["count"] == 3


def test_json_http_client_does_not_retry_auth_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        raise _http_error(401, {"error": "invalid token"})

    def fail_sleep(_: float) -> None:
        raise AssertionError("auth errors must not be retried")

    monkeypatch.setattr("meeting_pipeline.services.http_client.sleep", fail_sleep)
    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example", max_attempts=3)
    with pytest.raises(UpstreamAuthError) as exc_info:
        client.get_json("https://api.example.test/resource")

    assert attempts["count"] == 1
    assert exc_info.value.upstream_status == 401


def test_json_http_client_raises_client_errors_immediately(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        raise _http_error(404, {"error": "not found"})

    monkeypatch.setattr("meeting_pipeline.services.http_client.sleep", lambda _: None)
    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example", max_attempts=3)
    with pytest.raises(UpstreamError) as exc_info:
        client.get_json("https://api.example.test/resource")

    assert attempts["count"] == 1
    assert not isinstance(exc_info.value, UpstreamTransientError)
    assert exc_info.value.upstream_status == 404


def test_json_http_client_posts_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        captured["method"] = req.get_method()
        captured["content_type"] = req.headers.get("Content-type")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _MockResponse({"name": "created"})

    monkeypatch.setattr("meeting_pipeline.services.http_client.request.urlopen", fake_urlopen)

    client = JsonHttpClient(service_name="Example")
    payload = client.post_json("https://api.example.test/resource", {"displayName": "store"})

    assert payload == {"name": "created"}
    assert captured == {
        "method": "POST",
        "content_type": "application/json",
        "body": {"displayName": "store"},
    }


def test_json_http_client_rejects_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    class _RawResponse(_MockResponse):
        def read(self) -> bytes:
            return b"<html>gateway</html>"

    monkeypatch.setattr(
        "meeting_pipeline.services.http_client.request.urlopen",
        lambda req, timeout=10: _RawResponse({}),
    )

    client = JsonHttpClient(service_name="Example")
    with pytest.raises(UpstreamError, match="invalid JSON"):
        client.get_json("https://api.example.test/resource")


def test_backoff_delay_grows_exponentially() -> None:
    client = JsonHttpClient(service_name="Example", initial_backoff_seconds=0.5)

    assert 0.5 <= client.backoff_delay(1) <= 1.0
    assert 1.0 <= client.backoff_delay(2) <= 1.5
    assert 2.0 <= client.backoff_delay(3) <= 2.5
