import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app

client = TestClient(app)


def test_health_endpoint_returns_expected_shape() -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "Meeting Bot Orchestrator API"
    assert "timestamp" in data


def test_lifespan_keeps_scheduler_idle_without_intervals() -> None:
    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/api/health").status_code == 200
        assert app.state.scheduler.running is False


def test_lifespan_starts_and_stops_scheduler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CALENDAR_SYNC_INTERVAL_MINUTES", "15")
    monkeypatch.setenv("NOTIFICATION_OUTBOX_INTERVAL_SECONDS", "60")
    get_settings.cache_clear()

    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/api/health").status_code == 200
        scheduler = app.state.scheduler
        assert scheduler.running is True

    assert scheduler.running is False
