import pytest
from fastapi.testclient import TestClient

from meeting_pipeline.core.config import get_settings
from meeting_pipeline.main import app

client = TestClient(app)


def test_health_endpoint_returns_expected_shape() -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "service" in data
    assert "timestamp" in data


def test_health_endpoint_reports_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_STORE", "Memory")
    monkeypatch.setenv("FATHOM_WEBHOOK_SECRET", "whsec-test")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    get_settings.cache_clear()

    try:
        data = client.get("/api/health").json()
    finally:
        get_settings.cache_clear()

    assert data["data_store"] == "memory"
    assert data["webhook_signature_required"] is True
    assert data["file_search_configured"] is False
