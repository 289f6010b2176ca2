from enum import StrEnum

from pydantic import BaseModel, Field


class ZoomWebhookEventType(StrEnum):
    url_validation = "endpoint.url_validation"
    meeting_started = "meeting.started"
    meeting_ended = "meeting.ended"
    recording_completed = "recording.completed"


class UrlValidationResponse(BaseModel):
    plainToken: str
    encryptedToken: str


class ZoomWebhookResponse(BaseModel):
    status: str = "ok"
    event: str | None = None
    handled: bool = False
    meeting_ids: list[str] = Field(default_factory=list)
    detail: str | None = None
