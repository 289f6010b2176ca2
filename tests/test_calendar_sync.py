from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings, get_settings
from app.main import app
from app.services.calendar_connection_store import GOOGLE_CALENDAR_PROVIDER, create_calendar_connection_store
from app.services.calendar_sync_scheduler import BackgroundJobScheduler
from app.services.calendar_sync_service import CalendarSyncService
from app.services.google_calendar_client import GoogleCalendarError
from app.services.meeting_store import create_meeting_store

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
CRON_SECRET = "cron-secret"


class _FakeCalendarClient:
    def __init__(
        self,
        events: list[dict[str, Any]],
        expired: bool = False,
        refresh_error: bool = False,
        list_error: bool = False,
    ) -> None:
        self.events = events
        self.expired = expired
        self.refresh_error = refresh_error
        self.list_error = list_error
        self.access_token = "old-token"
        self.refresh_token = "refresh-token"
        self.token_expires_at: datetime | None = None
        self.token_refreshed = False
        self.windows: list[tuple[datetime, datetime]] = []

    def is_token_expired(self, now: datetime | None = None) -> bool:
        return self.expired

    def refresh_access_token(self) -> None:
        if self.refresh_error:
            raise GoogleCalendarError("Google OAuth refresh HTTP 400: invalid_grant")
        self.access_token = "new-token"
        self.token_expires_at = NOW + timedelta(hours=1)
        self.token_refreshed = True

    def list_events(self, *, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        if self.list_error:
            raise GoogleCalendarError("Google Calendar API HTTP 500: boom")
        self.windows.append((time_min, time_max))
        return self.events


@pytest.fixture(autouse=True)
def configure_cron_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CALENDAR_SYNC_SECRET", CRON_SECRET)
    get_settings.cache_clear()


def _connect(user_id: str) -> dict[str, Any]:
    return create_calendar_connection_store(get_settings()).upsert(
        user_id=user_id,
        provider=GOOGLE_CALENDAR_PROVIDER,
        access_token="old-token",
        refresh_token="refresh-token",
        token_expires_at=None,
    )


def _event(summary: str | None, **fields: Any) -> dict[str, Any]:
    event = {"id": f"evt-{summary}", "start": {"dateTime": "2026-03-02T10:00:00Z"}, **fields}
    if summary is not None:
        event["summary"] = summary
    return event


def test_sync_creates_scheduled_meetings_once_per_link() -> None:
    _connect("user-1")
    fake_client = _FakeCalendarClient(
        [
            _event("Standup", description="Join https://acme.zoom.us/j/5551234 now"),
            _event("Design", hangoutLink="https://meet.google.com/abc-defg-hij"),
            _event(
                None,
                conferenceData={"entryPoints": [{"uri": "https://meet.google.com/xyz-abcd-efg"}]},
            ),
            _event("Lunch", location="Cafeteria"),
        ],
    )
    service = CalendarSyncService(get_settings(), calendar_client_factory=lambda connection: fake_client)

    first = service.sync_all(now=NOW)
    second = service.sync_all(now=NOW)

    assert first.connections_synced == 1
    assert first.meetings_created == 3
    assert second.meetings_created == 0
    assert second.meetings_skipped == 3
    assert fake_client.windows[0] == (NOW, NOW + timedelta(hours=24))

    meetings = create_meeting_store(get_settings()).list_by_user("user-1", limit=10)
    assert {meeting["status"] for meeting in meetings} == {"scheduled"}
    topics = {meeting["external_id"]: meeting["topic"] for meeting in meetings}
    assert topics == {
        "5551234": "Standup",
        "abc-defg-hij": "Design",
        "xyz-abcd-efg": "Calendar Meeting",
    }
    standup = next(meeting for meeting in meetings if meeting["external_id"] == "5551234")
    assert standup["scheduled_for"] == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    connection = create_calendar_connection_store(get_settings()).get("user-1", GOOGLE_CALENDAR_PROVIDER)
    assert connection["last_synced_at"] is not None


def test_sync_persists_refreshed_tokens() -> None:
    _connect("user-1")
    fake_client = _FakeCalendarClient([], expired=True)
    service = CalendarSyncService(get_settings(), calendar_client_factory=lambda connection: fake_client)

    summary = service.sync_all(now=NOW)

    assert summary.connections_synced == 1
    connection = create_calendar_connection_store(get_settings()).get("user-1", GOOGLE_CALENDAR_PROVIDER)
    assert connection["access_token"] == "new-token"
    assert connection["token_expires_at"] == NOW + timedelta(hours=1)


def test_failing_connection_does_not_stop_the_sweep() -> None:
    _connect("user-broken")
    _connect("user-refresh")
    _connect("user-ok")
    clients = {
        "user-broken": _FakeCalendarClient([], list_error=True),
        "user-refresh": _FakeCalendarClient([], expired=True, refresh_error=True),
        "user-ok": _FakeCalendarClient([_event("Sync", description="https://acme.zoom.us/j/777")]),
    }
    service = CalendarSyncService(
        get_settings(),
        calendar_client_factory=lambda connection: clients[connection["user_id"]],
    )

    summary = service.sync_all(now=NOW)

    assert summary.connections_scanned == 3
    assert summary.connections_synced == 1
    assert summary.connections_failed == 2
    assert summary.meetings_created == 1


def test_disabled_connections_are_not_scanned() -> None:
    _connect("user-1")
    service = CalendarSyncService(
        get_settings(),
        calendar_client_factory=lambda connection: _FakeCalendarClient([]),
    )

    assert service.set_sync_enabled("user-1", False)
    assert not service.set_sync_enabled("user-missing", False)
    assert service.sync_all(now=NOW).connections_scanned == 0


def test_sync_endpoint_requires_cron_secret() -> None:
    client = TestClient(app)

    missing = client.post("/api/calendar/sync")
    wrong = client.post("/api/calendar/sync", headers={"X-Cron-Secret": "nope"})
    accepted = client.post("/api/calendar/sync", headers={"X-Cron-Secret": CRON_SECRET})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["connections_scanned"] == 0


def test_scheduler_stays_idle_without_intervals() -> None:
    scheduler = BackgroundJobScheduler(get_settings())

    assert scheduler.start() is False
    assert not scheduler.running


def test_scheduler_registers_configured_jobs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CALENDAR_SYNC_INTERVAL_MINUTES", "15")
    monkeypatch.setenv("NOTIFICATION_OUTBOX_INTERVAL_SECONDS", "30")
    get_settings.cache_clear()
    scheduler = BackgroundJobScheduler(get_settings())

    try:
        assert scheduler.start() is True
        assert scheduler.running
    finally:
        scheduler.stop()

    assert not scheduler.running


def test_default_settings_schedule_both_jobs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CALENDAR_SYNC_INTERVAL_MINUTES", raising=False)
    monkeypatch.delenv("NOTIFICATION_OUTBOX_INTERVAL_SECONDS", raising=False)

    settings = Settings(_env_file=None)

    assert settings.calendar_sync_interval_minutes == 15
    assert settings.notification_outbox_interval_seconds == 60
