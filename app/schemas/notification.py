from enum import StrEnum

from pydantic import BaseModel


class NotificationType(StrEnum):
    transcript_ready = "transcript_ready"
    phase1_complete = "phase1_complete"
    bot_failed = "bot_failed"


class NotificationDeliveryStatus(StrEnum):
    sent = "sent"
    disabled = "disabled"
    skipped = "skipped"


class NotificationPreferences(BaseModel):
    email_on_transcript_ready: bool = True
    email_on_phase1_complete: bool = True
    email_on_bot_failed: bool = True


class NotificationPreferencesUpdateRequest(BaseModel):
    email_on_transcript_ready: bool | None = None
    email_on_phase1_complete: bool | None = None
    email_on_bot_failed: bool | None = None


class NotificationSendRequest(BaseModel):
    type: str
    meeting_id: str | None = None


class NotificationResult(BaseModel):
    status: NotificationDeliveryStatus
    message: str
