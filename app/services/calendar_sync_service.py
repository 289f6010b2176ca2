import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.integration import CalendarSyncResponse
from app.schemas.meeting import BotProvider, MeetingStatus
from app.services.calendar_connection_store import (
    GOOGLE_CALENDAR_PROVIDER,
    CalendarConnectionStore,
    create_calendar_connection_store,
)
from app.services.google_calendar_client import GoogleCalendarClient, GoogleCalendarError, parse_event_start
from app.services.meeting_store import (
    DuplicateMeetingError,
    MeetingStore,
    build_meeting_document,
    create_meeting_store,
)
from app.services.meeting_url_parser import MeetingLink, find_meeting_links

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TOPIC = "Calendar Meeting"

CalendarClientFactory = Callable[[Mapping[str, Any]], GoogleCalendarClient]


class CalendarSyncService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        connection_store: CalendarConnectionStore | None = None,
        calendar_client_factory: CalendarClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.connection_store = connection_store or create_calendar_connection_store(settings)
        self.calendar_client_factory = calendar_client_factory or self._build_calendar_client

    def sync_all(self, now: datetime | None = None) -> CalendarSyncResponse:
        """Scan every sync-enabled Google connection for upcoming meeting links.

        A failing connection is logged and counted; it never stops the sweep.
        """
        current_time = now or datetime.now(UTC)
        summary = CalendarSyncResponse()
        for connection in self.connection_store.list_sync_enabled(GOOGLE_CALENDAR_PROVIDER):
            summary.connections_scanned += 1
            try:
                synced = self._sync_connection(connection, current_time, summary)
            except Exception:
                logger.exception(
                    "Calendar sync failed connection_id=%s user_id=%s",
                    connection.get("_id"),
                    connection.get("user_id"),
                )
                synced = False
            if synced:
                summary.connections_synced += 1
            else:
                summary.connections_failed += 1

        logger.info(
            "Calendar sweep finished scanned=%s synced=%s failed=%s created=%s skipped=%s",
            summary.connections_scanned,
            summary.connections_synced,
            summary.connections_failed,
            summary.meetings_created,
            summary.meetings_skipped,
        )
        return summary

    def set_sync_enabled(self, user_id: str, enabled: bool) -> bool:
        connection = self.connection_store.get(user_id, GOOGLE_CALENDAR_PROVIDER)
        if connection is None:
            return False
        return self.connection_store.update(str(connection["_id"]), {"calendar_sync_enabled": enabled})

    def _sync_connection(
        self,
        connection: Mapping[str, Any],
        now: datetime,
        summary: CalendarSyncResponse,
    ) -> bool:
        connection_id = str(connection["_id"])
        user_id = str(connection["user_id"])
        client = self.calendar_client_factory(connection)

        if client.is_token_expired(now):
            try:
                client.refresh_access_token()
            except GoogleCalendarError as exc:
                logger.warning("Calendar token refresh failed connection_id=%s error=%s", connection_id, exc)
                return False

        events = client.list_events(
            time_min=now,
            time_max=now + timedelta(hours=self.settings.calendar_sync_window_hours),
        )
        if client.token_refreshed:
            self.connection_store.update(
                connection_id,
                {
                    "access_token": client.access_token,
                    "refresh_token": client.refresh_token or connection.get("refresh_token"),
                    "token_expires_at": client.token_expires_at,
                },
            )

        for event in events:
            for link in find_meeting_links(_event_search_text(event)):
                if self._record_scheduled_meeting(user_id, link, event):
                    summary.meetings_created += 1
                else:
                    summary.meetings_skipped += 1

        self.connection_store.update(connection_id, {"last_synced_at": datetime.now(UTC)})
        return True

    def _record_scheduled_meeting(self, user_id: str, link: MeetingLink, event: Mapping[str, Any]) -> bool:
        if self.meeting_store.find_by_external_id(link.platform.value, link.external_id, user_id=user_id):
            return False
        summary = event.get("summary")
        document = build_meeting_document(
            user_id=user_id,
            platform=link.platform.value,
            status=MeetingStatus.scheduled.value,
            external_id=link.external_id,
            meeting_url=link.url,
            topic=summary.strip() if isinstance(summary, str) and summary.strip() else DEFAULT_EVENT_TOPIC,
            bot_provider=BotProvider.none.value,
            scheduled_for=parse_event_start(dict(event)),
        )
        try:
            self.meeting_store.create(document)
        except DuplicateMeetingError:
            return False
        logger.info(
            "Scheduled meeting discovered user_id=%s platform=%s external_id=%s",
            user_id,
            link.platform.value,
            link.external_id,
        )
        return True

    def _build_calendar_client(self, connection: Mapping[str, Any]) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            access_token=str(connection.get("access_token") or ""),
            refresh_token=str(connection.get("refresh_token") or ""),
            client_id=self.settings.google_calendar_client_id,
            client_secret=self.settings.google_calendar_client_secret,
            calendar_id=self.settings.google_calendar_id,
            token_expires_at=connection.get("token_expires_at"),
            timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
        )


def _event_search_text(event: Mapping[str, Any]) -> str:
    parts = [
        str(event.get("description") or ""),
        str(event.get("location") or ""),
        str(event.get("hangoutLink") or ""),
        json.dumps(event.get("conferenceData") or {}),
    ]
    return " ".join(parts)
