from collections.abc import Iterator

import pytest

from app.core.config import get_settings
from app.services.calendar_connection_store import clear_calendar_connection_store_cache
from app.services.meeting_store import clear_meeting_store_cache
from app.services.notification_outbox_store import clear_notification_outbox_store_cache
from app.services.platform_connection_store import clear_platform_connection_store_cache
from app.services.transcript_store import clear_transcript_store_cache
from app.services.user_store import clear_user_store_cache


def _clear_caches() -> None:
    clear_user_store_cache()
    clear_meeting_store_cache()
    clear_transcript_store_cache()
    clear_calendar_connection_store_cache()
    clear_platform_connection_store_cache()
    clear_notification_outbox_store_cache()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_stores_and_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("USER_DATA_STORE", "memory")
    monkeypatch.setenv("TASK_LAUNCH_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("CALENDAR_SYNC_INTERVAL_MINUTES", "0")
    monkeypatch.setenv("NOTIFICATION_OUTBOX_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("EMAIL_API_URL", "")
    monkeypatch.setenv("ECS_API_URL", "https://ecs-proxy.internal")

    _clear_caches()
    yield
    _clear_caches()
