import io
import json
from typing import Any
from urllib import error

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.meeting_store import build_meeting_document, create_meeting_store

ZOOM_URL = "https://us05web.zoom.us/j/81234567890?pwd=secret"


class _MockResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


def _http_error(status_code: int, payload: dict[str, object]) -> error.HTTPError:
    return error.HTTPError(
        url="https://ecs-proxy.internal",
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(payload).encode("utf-8")),
    )


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _register_and_login(client: TestClient, email: str, password: str = "password123") -> tuple[str, str]:
    response = client.post(
        "/api/auth/register",
        json={"full_name": "Bot Owner", "email": email, "password": password},
    )
    assert response.status_code == 200
    payload = response.json()
    return payload["access_token"], payload["user"]["id"]


def _capture_task_requests(monkeypatch: pytest.MonkeyPatch, responses: list[Any]) -> list[dict[str, Any]]:
    captured: list[dict[str, Any]] = []

    def fake_urlopen(req, timeout=15):  # type: ignore[no-untyped-def]
        captured.append({"headers": dict(req.header_items()), "body": json.loads(req.data.decode("utf-8"))})
        outcome = responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return _MockResponse(outcome)

    monkeypatch.setattr("app.services.task_launcher_client.request.urlopen", fake_urlopen)
    return captured


def test_launch_requires_authentication(client: TestClient) -> None:
    response = client.post("/api/bots/launch", json={"meeting_url": ZOOM_URL})

    assert response.status_code == 401


def test_launch_rejects_unsupported_url(client: TestClient) -> None:
    token, _ = _register_and_login(client, "launch-invalid@example.com")

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": "https://teams.microsoft.com/l/meetup-join/1"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 400


def test_launch_creates_meeting_and_submits_task(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token, user_id = _register_and_login(client, "launch@example.com")
    captured = _capture_task_requests(
        monkeypatch,
        [{"tasks": [{"taskArn": "arn:aws:ecs:us-east-1:1:task/zoom-bot-cluster/abc"}], "failures": []}],
    )

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": ZOOM_URL},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["platform"] == "zoom"
    assert payload["task_arn"] == "arn:aws:ecs:us-east-1:1:task/zoom-bot-cluster/abc"

    meeting = create_meeting_store(get_settings()).get_by_id(payload["meeting_id"])
    assert meeting["status"] == "bot_joining"
    assert meeting["external_id"] == "81234567890"
    assert meeting["bot_provider"] == "worker_task"
    assert meeting["bot_task_arn"] == payload["task_arn"]

    body = captured[0]["body"]
    assert body["taskDefinition"] == "zoom-bot-task"
    assert body["launchType"] == "FARGATE"
    environment = {
        item["name"]: item["value"] for item in body["overrides"]["containerOverrides"][0]["environment"]
    }
    assert environment["MEETING_ID"] == payload["meeting_id"]
    assert environment["USER_ID"] == user_id
    assert environment["MEETING_URL"] == ZOOM_URL


def test_launch_claims_scheduled_meeting_for_same_link(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token, user_id = _register_and_login(client, "scheduled@example.com")
    scheduled = create_meeting_store(get_settings()).create(
        build_meeting_document(
            user_id=user_id,
            platform="zoom",
            status="scheduled",
            external_id="81234567890",
            meeting_url="https://us05web.zoom.us/j/81234567890",
            topic="Planning",
        ),
    )
    _capture_task_requests(monkeypatch, [{"tasks": [{"taskArn": "arn:task/1"}]}])

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": ZOOM_URL},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    assert response.json()["meeting_id"] == scheduled["_id"]
    assert create_meeting_store(get_settings()).get_by_id(scheduled["_id"])["status"] == "bot_joining"


def test_second_launch_for_active_meeting_conflicts(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token, _ = _register_and_login(client, "twice@example.com")
    _capture_task_requests(monkeypatch, [{"tasks": [{"taskArn": "arn:task/1"}]}])
    headers = {"Authorization": f"Bearer {token}"}

    first = client.post("/api/bots/launch", json={"meeting_url": ZOOM_URL}, headers=headers)
    second = client.post("/api/bots/launch", json={"meeting_url": ZOOM_URL}, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409


def test_launch_retries_transient_failures(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token, _ = _register_and_login(client, "retry@example.com")
    captured = _capture_task_requests(
        monkeypatch,
        [
            _http_error(503, {"message": "unavailable"}),
            {"tasks": [], "failures": [{"reason": "RESOURCE:MEMORY"}]},
            {"tasks": [{"taskArn": "arn:task/3"}]},
        ],
    )

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": "https://meet.google.com/abc-defg-hij"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    assert response.json()["platform"] == "google_meet"
    assert len(captured) == 3
    assert captured[0]["body"]["taskDefinition"] == "gmeet-bot-task"


def test_launch_failure_marks_meeting_failed(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token, user_id = _register_and_login(client, "fail@example.com")
    _capture_task_requests(monkeypatch, [_http_error(400, {"message": "Invalid task definition"})])

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": ZOOM_URL},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 500
    meetings = create_meeting_store(get_settings()).list_by_user(user_id, limit=10)
    assert len(meetings) == 1
    assert meetings[0]["status"] == "failed"
    assert meetings[0]["error_detail"].startswith("Task launch failed:")


def test_launch_without_task_endpoint_fails_without_calling_out(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ECS_API_URL", "")
    get_settings.cache_clear()
    token, user_id = _register_and_login(client, "no-endpoint@example.com")
    captured = _capture_task_requests(monkeypatch, [])

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": ZOOM_URL},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 500
    assert captured == []
    meetings = create_meeting_store(get_settings()).list_by_user(user_id, limit=10)
    assert meetings[0]["status"] == "failed"
    assert meetings[0]["error_detail"] == "Task launch failed: Task launcher is not configured."


def test_launch_for_other_user_requires_admin(client: TestClient) -> None:
    token, _ = _register_and_login(client, "not-admin@example.com")

    response = client.post(
        "/api/bots/launch",
        json={"meeting_url": ZOOM_URL, "user_id": "someone-else"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 400


def test_managed_bot_requires_configured_coordinator(client: TestClient) -> None:
    token, _ = _register_and_login(client, "managed-unconfigured@example.com")

    response = client.post(
        "/api/bots/managed",
        json={"meeting_topic": "Kickoff"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "Bot service not configured."


def test_managed_bot_starts_session(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOT_COORDINATOR_URL", "https://coordinator.example/sessions")
    monkeypatch.setenv("BOT_SECRET", "bot-secret")
    get_settings.cache_clear()
    token, user_id = _register_and_login(client, "managed@example.com")
    captured: dict[str, Any] = {}

    def fake_urlopen(req, timeout=20):  # type: ignore[no-untyped-def]
        captured["secret"] = req.get_header("X-bot-secret")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _MockResponse(
            {"session_id": "sess-1", "rtmp_url": "rtmp://live.example/app", "stream_key": "key-1"},
        )

    monkeypatch.setattr("app.services.bot_coordinator_client.request.urlopen", fake_urlopen)

    response = client.post(
        "/api/bots/managed",
        json={"meeting_topic": "  Kickoff  ", "language": "es"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["session_id"] == "sess-1"
    assert payload["status"] == "in_progress"
    assert payload["topic"] == "Kickoff"
    assert captured["secret"] == "bot-secret"
    assert captured["body"]["action"] == "start_session"
    assert captured["body"]["user_id"] == user_id

    meeting = create_meeting_store(get_settings()).get_by_id(payload["meeting_id"])
    assert meeting["bot_provider"] == "managed"
    assert meeting["bot_session_id"] == "sess-1"
    assert meeting["language"] == "es"
