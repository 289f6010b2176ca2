from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.calendar_connection_store import GOOGLE_CALENDAR_PROVIDER, create_calendar_connection_store
from app.services.platform_connection_store import create_platform_connection_store
from app.services.security_utils import create_access_token
from app.services.zoom_api_client import ZoomApiClient, ZoomApiError


@pytest.fixture(autouse=True)
def configure_oauth_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "google-client-id")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_SECRET", "google-client-secret")
    monkeypatch.setenv("GOOGLE_CALENDAR_REDIRECT_URI", "http://localhost:8000/api/integrations/google-calendar/callback")
    monkeypatch.setenv("ZOOM_CLIENT_ID", "zoom-client-id")
    monkeypatch.setenv("ZOOM_CLIENT_SECRET", "zoom-client-secret")
    monkeypatch.setenv("FRONTEND_BASE_URL", "http://localhost:5173")
    get_settings.cache_clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _register_and_login(client: TestClient, email: str, password: str = "password123") -> tuple[str, str]:
    register_response = client.post(
        "/api/auth/register",
        json={
            "full_name": "Test User",
            "email": email,
            "password": password,
        },
    )
    assert register_response.status_code == 200
    payload = register_response.json()
    return payload["access_token"], payload["user"]["id"]


def _start_oauth(client: TestClient, path: str, token: str) -> dict[str, list[str]]:
    response = client.get(path, params={"access_token": token}, follow_redirects=False)
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)


def test_integrations_requires_authentication(client: TestClient) -> None:
    response = client.get("/api/integrations/status")
    assert response.status_code == 401


def test_integrations_status_for_new_user_is_disconnected(client: TestClient) -> None:
    token, _ = _register_and_login(client, "user1@example.com")

    response = client.get(
        "/api/integrations/status",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["google_calendar"]["connected"] is False
    assert payload["platform_connections"] == []


def test_google_calendar_connect_requires_token(client: TestClient) -> None:
    response = client.get("/api/integrations/google-calendar/connect", follow_redirects=False)

    assert response.status_code == 401


def test_google_calendar_connect_returns_503_without_configuration(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "")
    get_settings.cache_clear()
    token, _ = _register_and_login(client, "unconfigured@example.com")

    response = client.get(
        "/api/integrations/google-calendar/connect",
        params={"access_token": token},
        follow_redirects=False,
    )

    assert response.status_code == 503


def test_google_calendar_oauth_flow_stores_connection(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    token, user_id = _register_and_login(client, "calendar@example.com")
    query = _start_oauth(client, "/api/integrations/google-calendar/connect", token)
    assert query["client_id"] == ["google-client-id"]
    assert query["access_type"] == ["offline"]

    exchanged: dict[str, Any] = {}

    def fake_exchange(**kwargs: Any) -> dict[str, Any]:
        exchanged.update(kwargs)
        return {"access_token": "google-access", "refresh_token": "google-refresh", "expires_in": 3600}

    monkeypatch.setattr("app.api.routes.integrations.exchange_google_calendar_code", fake_exchange)

    callback = client.get(
        "/api/integrations/google-calendar/callback",
        params={"code": "auth-code", "state": query["state"][0]},
        follow_redirects=False,
    )

    assert callback.status_code == 302
    assert "google_calendar_oauth=success" in callback.headers["location"]
    assert exchanged["code"] == "auth-code"
    connection = create_calendar_connection_store(get_settings()).get(user_id, GOOGLE_CALENDAR_PROVIDER)
    assert connection["access_token"] == "google-access"
    assert connection["refresh_token"] == "google-refresh"
    assert connection["calendar_sync_enabled"] is True

    status_response = client.get("/api/integrations/status", headers={"Authorization": f"Bearer {token}"})
    assert status_response.json()["google_calendar"]["connected"] is True


def test_google_calendar_callback_rejects_foreign_state(client: TestClient) -> None:
    forged_state, _ = create_access_token(
        claims={"type": "google_calendar_oauth_state", "sub": "1"},
        secret_key="another-secret",
        ttl_minutes=10,
    )

    response = client.get(
        "/api/integrations/google-calendar/callback",
        params={"code": "auth-code", "state": forged_state},
        follow_redirects=False,
    )

    assert response.status_code == 401


def test_google_calendar_callback_redirects_provider_error(client: TestClient) -> None:
    response = client.get(
        "/api/integrations/google-calendar/callback",
        params={"error": "access_denied"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert "google_calendar_oauth=error" in response.headers["location"]


def test_zoom_oauth_flow_stores_platform_connection(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    token, user_id = _register_and_login(client, "zoom@example.com")
    query = _start_oauth(client, "/api/integrations/zoom/connect", token)
    assert query["client_id"] == ["zoom-client-id"]

    def fake_exchange(self, *, code: str, redirect_uri: str) -> dict[str, Any]:  # type: ignore[no-untyped-def]
        return {"access_token": "zoom-access", "refresh_token": "zoom-refresh", "expires_in": 3600}

    def fake_current_user(self, access_token: str) -> dict[str, Any]:  # type: ignore[no-untyped-def]
        assert access_token == "zoom-access"
        return {"id": "zoom-user-1", "account_id": "zoom-account-1"}

    monkeypatch.setattr(ZoomApiClient, "exchange_code", fake_exchange)
    monkeypatch.setattr(ZoomApiClient, "get_current_user", fake_current_user)

    callback = client.get(
        "/api/integrations/zoom/callback",
        params={"code": "zoom-code", "state": query["state"][0]},
        follow_redirects=False,
    )

    assert callback.status_code == 302
    assert "zoom_oauth=success" in callback.headers["location"]
    store = create_platform_connection_store(get_settings())
    connection = store.find_by_external_user_id("zoom", "zoom-user-1")
    assert connection["user_id"] == user_id
    assert connection["account_id"] == "zoom-account-1"

    status_response = client.get("/api/integrations/status", headers={"Authorization": f"Bearer {token}"})
    assert status_response.json()["platform_connections"][0]["account_id"] == "zoom-account-1"


def test_zoom_callback_state_cannot_be_used_for_google(client: TestClient) -> None:
    token, _ = _register_and_login(client, "mixup@example.com")
    query = _start_oauth(client, "/api/integrations/zoom/connect", token)

    response = client.get(
        "/api/integrations/google-calendar/callback",
        params={"code": "auth-code", "state": query["state"][0]},
        follow_redirects=False,
    )

    assert response.status_code == 401


def test_zoom_callback_maps_upstream_error_to_502(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    token, _ = _register_and_login(client, "zoom-error@example.com")
    query = _start_oauth(client, "/api/integrations/zoom/connect", token)

    def failing_exchange(self, *, code: str, redirect_uri: str) -> dict[str, Any]:  # type: ignore[no-untyped-def]
        raise ZoomApiError("Zoom OAuth token exchange HTTP 400: invalid_grant")

    monkeypatch.setattr(ZoomApiClient, "exchange_code", failing_exchange)

    response = client.get(
        "/api/integrations/zoom/callback",
        params={"code": "zoom-code", "state": query["state"][0]},
        follow_redirects=False,
    )

    assert response.status_code == 502


def test_calendar_sync_toggle(client: TestClient) -> None:
    token, user_id = _register_and_login(client, "toggle@example.com")
    headers = {"Authorization": f"Bearer {token}"}

    missing = client.put("/api/integrations/google-calendar/sync", json={"enabled": False}, headers=headers)
    create_calendar_connection_store(get_settings()).upsert(
        user_id=user_id,
        provider=GOOGLE_CALENDAR_PROVIDER,
        access_token="access",
        refresh_token="refresh",
        token_expires_at=None,
    )
    disabled = client.put("/api/integrations/google-calendar/sync", json={"enabled": False}, headers=headers)

    assert missing.status_code == 404
    assert disabled.status_code == 200
    assert disabled.json()["calendar_sync_enabled"] is False
