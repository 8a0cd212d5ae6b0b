import hashlib
import hmac
import json
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from meeting_pipeline.core.config import get_settings
from meeting_pipeline.main import app
from meeting_pipeline.services.crm_store import clear_crm_store_cache
from meeting_pipeline.services.errors import UpstreamTransientError
from meeting_pipeline.services.index_queue_store import clear_index_queue_store_cache, create_index_queue_store
from meeting_pipeline.services.integration_store import clear_integration_store_cache, create_integration_store
from meeting_pipeline.services.meeting_store import clear_meeting_store_cache, create_meeting_store
from meeting_pipeline.services.sync_state_store import clear_sync_state_store_cache
from meeting_pipeline.services.user_store import clear_user_store_cache, create_user_store

client = TestClient(app)

TRANSCRIPT = [
    {"speaker": {"display_name": "Ana Rep"}, "text": "Welcome, let us look at the rollout timeline."},
    {"speaker": {"display_name": "Bruno Buyer"}, "text": "We need the security review done first."},
]


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_user_store_cache()
    clear_integration_store_cache()
    clear_sync_state_store_cache()
    clear_meeting_store_cache()
    clear_crm_store_cache()
    clear_index_queue_store_cache()


@pytest.fixture(autouse=True)
def _configure_memory_stores() -> Iterator[None]:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("FATHOM_WEBHOOK_SECRET", "")
    _clear_caches()
    yield
    monkeypatch.undo()
    _clear_caches()


class _FakeFathomClient:
    def __init__(self, details: dict[str, dict[str, Any]], *, failing: bool = False) -> None:
        self.details = details
        self.failing = failing
        self.fetched: list[str] = []

    def fetch_call(self, call_id: str) -> dict[str, Any]:
        self.fetched.append(call_id)
        if self.failing:
            raise UpstreamTransientError("Fathom API HTTP 503: unavailable")
        return dict(self.details[call_id])

    def fetch_call_analytics(self, call_id: str) -> dict[str, Any] | None:
        return None

    def fetch_transcript(self, recording_id: str) -> str | None:
        return None

    def fetch_summary(self, recording_id: str) -> str | None:
        return None


def _install_fathom_client(monkeypatch: pytest.MonkeyPatch, fake: _FakeFathomClient) -> None:
    monkeypatch.setattr("meeting_pipeline.services.sync_engine.FathomApiClient", lambda **_: fake)


def _connect_integration(
    *,
    user_id: str = "user-1",
    email: str = "ana@seller.io",
    expires_in: timedelta = timedelta(hours=1),
) -> None:
    create_integration_store(get_settings()).save_integration(
        user_id=user_id,
        access_token="fathom-token",
        token_expires_at=datetime.now(UTC) + expires_in,
        provider_user_email=email,
    )


def _detail(recording_id: str) -> dict[str, Any]:
    return {
        "recording_id": recording_id,
        "title": "Security review",
        "recording_start_time": "2026-03-10T09:00:00Z",
        "recording_end_time": "2026-03-10T09:30:00Z",
        "recorded_by": {"name": "Ana Rep", "email": "ana@seller.io"},
    }


def _webhook_payload(recording_id: str = "9001", **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "recording_id": recording_id,
        "url": f"https://fathom.video/calls/{recording_id}",
        "recorded_by": {"name": "Ana Rep", "email": "Ana@Seller.io"},
        "transcript": TRANSCRIPT,
    }
    payload.update(overrides)
    return payload


def test_fathom_webhook_syncs_meeting_with_transcript(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeFathomClient({"9001": _detail("9001")})
    _install_fathom_client(monkeypatch, fake)
    _connect_integration()

    response = client.post("/api/webhooks/fathom", json=_webhook_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["recording_id"] == "9001"
    assert body["user_id"] == "user-1"
    assert body["transcript_available"] is True
    assert body["request_id"]

    meeting = create_meeting_store(get_settings()).get_meeting(body["meeting_id"])
    assert meeting["title"] == "Security review"
    assert meeting["transcript_text"].startswith("Ana Rep: Welcome")
    queued = create_index_queue_store(get_settings()).list_candidates(user_id="user-1", limit=10)
    assert [item["meeting_id"] for item in queued] == [body["meeting_id"]]
    assert queued[0]["priority"] == 10


def test_fathom_webhook_accepts_call_without_transcript(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fathom_client(monkeypatch, _FakeFathomClient({"9002": _detail("9002")}))
    _connect_integration()

    response = client.post("/api/webhooks/fathom", json=_webhook_payload("9002", transcript=None))

    assert response.status_code == 202
    assert response.json()["success"] is True
    assert response.json()["transcript_available"] is False
    assert create_index_queue_store(get_settings()).list_candidates(user_id=None, limit=10) == []


def test_fathom_webhook_reads_recording_id_from_url(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeFathomClient({"9003": _detail("9003")})
    _install_fathom_client(monkeypatch, fake)
    _connect_integration()

    payload = _webhook_payload("9003")
    del payload["recording_id"]
    response = client.post("/api/webhooks/fathom", json=payload)

    assert response.status_code == 200
    assert fake.fetched == ["9003"]


def test_fathom_webhook_rejects_payload_without_recording_id() -> None:
    _connect_integration()

    response = client.post(
        "/api/webhooks/fathom",
        json={"recorded_by": {"email": "ana@seller.io"}, "topic": "meeting.completed"},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "recording id" in response.json()["error"]


def test_fathom_webhook_rejects_unknown_recorder() -> None:
    _connect_integration()

    response = client.post(
        "/api/webhooks/fathom",
        json=_webhook_payload(recorded_by={"email": "stranger@elsewhere.io"}),
    )

    assert response.status_code == 400
    assert "stranger@elsewhere.io" in response.json()["error"]


def test_fathom_webhook_resolves_user_through_accounts(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fathom_client(monkeypatch, _FakeFathomClient({"9004": _detail("9004")}))
    user = create_user_store(get_settings()).create_user(email="ana@seller.io", full_name="Ana Rep")
    _connect_integration(user_id=str(user["_id"]), email="ana.fathom@seller.io")

    response = client.post("/api/webhooks/fathom", json=_webhook_payload("9004"))

    assert response.status_code == 200
    assert response.json()["user_id"] == user["_id"]


def test_fathom_webhook_rejects_expired_integration() -> None:
    _connect_integration(expires_in=timedelta(minutes=-5))

    response = client.post("/api/webhooks/fathom", json=_webhook_payload())

    assert response.status_code == 401
    assert "expired" in response.json()["error"]


def test_fathom_webhook_reports_sync_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fathom_client(monkeypatch, _FakeFathomClient({}, failing=True))
    _connect_integration()

    response = client.post("/api/webhooks/fathom", json=_webhook_payload())

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "503" in response.json()["error"]


def test_fathom_webhook_requires_valid_signature_when_secret_configured(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FATHOM_WEBHOOK_SECRET", "whsec-test")
    get_settings.cache_clear()
    _install_fathom_client(monkeypatch, _FakeFathomClient({"9001": _detail("9001")}))
    _connect_integration()
    raw_body = json.dumps(_webhook_payload()).encode("utf-8")
    signature = hmac.new(b"whsec-test", raw_body, hashlib.sha256).hexdigest()

    rejected = client.post(
        "/api/webhooks/fathom",
        content=raw_body,
        headers={"Content-Type": "application/json", "x-webhook-signature": "sha256=bad"},
    )
    signed = client.post(
        "/api/webhooks/fathom",
        content=raw_body,
        headers={"Content-Type": "application/json", "x-webhook-signature": f"sha256={signature}"},
    )
    shared_secret = client.post(
        "/api/webhooks/fathom",
        content=raw_body,
        headers={"Content-Type": "application/json", "Authorization": "Bearer whsec-test"},
    )

    assert rejected.status_code == 401
    assert rejected.json()["success"] is False
    assert signed.status_code == 200
    assert shared_secret.status_code == 200
    assert signed.json()["meeting_id"] == shared_secret.json()["meeting_id"]


def test_fathom_webhook_rejects_invalid_json() -> None:
    response = client.post(
        "/api/webhooks/fathom",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Request body must be valid JSON."}
