from datetime import datetime

from pydantic import BaseModel, Field


class CalendarConnectionStatus(BaseModel):
    provider: str
    connected: bool
    calendar_sync_enabled: bool = False
    token_expires_at: datetime | None = None
    last_synced_at: datetime | None = None


class PlatformConnectionStatus(BaseModel):
    platform: str
    account_id: str
    connected_at: datetime | None = None


class IntegrationsStatusResponse(BaseModel):
    google_calendar: CalendarConnectionStatus
    platform_connections: list[PlatformConnectionStatus] = Field(default_factory=list)


class CalendarSyncToggleRequest(BaseModel):
    enabled: bool


class CalendarSyncResponse(BaseModel):
    connections_scanned: int = 0
    connections_synced: int = 0
    connections_failed: int = 0
    meetings_created: int = 0
    meetings_skipped: int = 0
