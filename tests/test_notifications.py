from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.schemas.notification import NotificationType
from app.services.email_client import EmailClient, EmailDeliveryError
from app.services.meeting_store import build_meeting_document, create_meeting_store
from app.services.notification_outbox_store import create_notification_outbox_store
from app.services.notification_service import NotificationService, render_notification_email
from app.services.user_store import create_user_store


class _RecordingEmailClient:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.sent: list[dict[str, str]] = []

    def send_email(self, *, to_address: str, subject: str, html_body: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise EmailDeliveryError("Email API HTTP 503: unavailable")
        self.sent.append({"to": to_address, "subject": subject, "html": html_body})


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _create_user(email: str = "owner@example.com") -> str:
    user = create_user_store(get_settings()).create_user(
        email=email,
        full_name="Meeting Owner",
        password_hash="unused",
        role="user",
    )
    return str(user["_id"])


def _register_and_login(client: TestClient, email: str) -> str:
    response = client.post(
        "/api/auth/register",
        json={"full_name": "Notified User", "email": email, "password": "password123"},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _service(email_client: _RecordingEmailClient) -> NotificationService:
    return NotificationService(get_settings(), email_client=email_client)  # type: ignore[arg-type]


def test_dispatch_sends_rendered_email_with_meeting_topic() -> None:
    user_id = _create_user()
    meeting = create_meeting_store(get_settings()).create(
        build_meeting_document(user_id=user_id, platform="zoom", status="completed", topic="Q3 <Planning>"),
    )
    email_client = _RecordingEmailClient()

    result = _service(email_client).dispatch(user_id, "transcript_ready", meeting_id=meeting["_id"])

    assert result.status == "sent"
    assert email_client.sent[0]["to"] == "owner@example.com"
    assert email_client.sent[0]["subject"] == "Transcript ready: Q3 <Planning>"
    assert "Q3 &lt;Planning&gt;" in email_client.sent[0]["html"]


def test_dispatch_respects_disabled_preference() -> None:
    user_id = _create_user()
    email_client = _RecordingEmailClient()
    service = _service(email_client)
    service.update_preferences(user_id, {"email_on_bot_failed": False})

    result = service.dispatch(user_id, "bot_failed")

    assert result.status == "disabled"
    assert result.message == "Notification disabled by user preferences"
    assert email_client.sent == []


def test_dispatch_skips_user_without_email() -> None:
    email_client = _RecordingEmailClient()

    result = _service(email_client).dispatch("unknown-user", "transcript_ready")

    assert result.status == "skipped"
    assert email_client.sent == []


def test_unknown_type_uses_generic_template() -> None:
    rendered = render_notification_email("weekly_digest", topic="ignored", app_url="https://app.example")

    assert rendered.subject == "Meeting Bot Notification"


def test_publish_deduplicates_by_meeting() -> None:
    service = _service(_RecordingEmailClient())

    assert service.publish("user-1", NotificationType.transcript_ready, meeting_id="meeting-1") is True
    assert service.publish("user-1", NotificationType.transcript_ready, meeting_id="meeting-1") is False


def test_outbox_drain_retries_with_backoff_then_sends() -> None:
    user_id = _create_user()
    email_client = _RecordingEmailClient(failures=1)
    service = _service(email_client)
    service.publish(user_id, NotificationType.transcript_ready, meeting_id="meeting-1")
    now = datetime.now(UTC) + timedelta(seconds=1)

    first = service.deliver_pending(now=now)
    record = create_notification_outbox_store(get_settings()).get_by_dedupe_key("transcript_ready:meeting-1")
    assert first.retried == 1
    assert record["attempts"] == 1
    assert record["next_attempt_at"] == now + timedelta(seconds=60)

    assert service.deliver_pending(now=now + timedelta(seconds=30)).sent == 0
    second = service.deliver_pending(now=now + timedelta(seconds=61))

    assert second.sent == 1
    assert len(email_client.sent) == 1
    record = create_notification_outbox_store(get_settings()).get_by_dedupe_key("transcript_ready:meeting-1")
    assert record["status"] == "sent"


def test_outbox_marks_record_dead_after_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFICATION_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("NOTIFICATION_RETRY_BASE_SECONDS", "1")
    get_settings.cache_clear()
    user_id = _create_user()
    service = _service(_RecordingEmailClient(failures=5))
    service.publish(user_id, NotificationType.bot_failed, meeting_id="meeting-2")
    now = datetime.now(UTC) + timedelta(seconds=1)

    first = service.deliver_pending(now=now)
    second = service.deliver_pending(now=now + timedelta(seconds=10))

    assert first.retried == 1
    assert second.dead == 1
    record = create_notification_outbox_store(get_settings()).get_by_dedupe_key("bot_failed:meeting-2")
    assert record["status"] == "dead"
    assert record["attempts"] == 2


def test_preferences_endpoints_round_trip(client: TestClient) -> None:
    token = _register_and_login(client, "prefs@example.com")
    headers = {"Authorization": f"Bearer {token}"}

    defaults = client.get("/api/notifications/preferences", headers=headers)
    updated = client.put(
        "/api/notifications/preferences",
        json={"email_on_phase1_complete": False},
        headers=headers,
    )
    fetched = client.get("/api/v1/notifications/preferences", headers=headers)

    assert defaults.json() == {
        "email_on_transcript_ready": True,
        "email_on_phase1_complete": True,
        "email_on_bot_failed": True,
    }
    assert updated.json()["email_on_phase1_complete"] is False
    assert fetched.json()["email_on_phase1_complete"] is False
    assert fetched.json()["email_on_transcript_ready"] is True


def test_send_endpoint_reports_disabled_notification(client: TestClient) -> None:
    token = _register_and_login(client, "disabled@example.com")
    headers = {"Authorization": f"Bearer {token}"}
    client.put("/api/notifications/preferences", json={"email_on_transcript_ready": False}, headers=headers)

    response = client.post("/api/notifications/send", json={"type": "transcript_ready"}, headers=headers)

    assert response.status_code == 200
    assert response.json()["status"] == "disabled"


def test_send_endpoint_returns_500_when_delivery_fails(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    token = _register_and_login(client, "failing@example.com")

    def failing_send(self, *, to_address: str, subject: str, html_body: str) -> None:  # type: ignore[no-untyped-def]
        raise EmailDeliveryError("Email API HTTP 500: down")

    monkeypatch.setattr(EmailClient, "send_email", failing_send)

    response = client.post(
        "/api/notifications/send",
        json={"type": "bot_failed"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 500


def test_send_endpoint_requires_authentication(client: TestClient) -> None:
    response = client.post("/api/notifications/send", json={"type": "transcript_ready"})

    assert response.status_code == 401
