from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class MeetingPlatform(StrEnum):
    zoom = "zoom"
    google_meet = "google_meet"


class MeetingStatus(StrEnum):
    scheduled = "scheduled"
    bot_joining = "bot_joining"
    in_progress = "in_progress"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class BotProvider(StrEnum):
    worker_task = "worker_task"
    managed = "managed"
    none = "none"


class TranscriptSource(StrEnum):
    zoom_recording = "zoom_recording"
    live_bot = "live_bot"
    google_meet_bot = "google_meet_bot"


class SpeakerSegment(BaseModel):
    speaker: str | None = None
    text: str
    start_time: float | None = None
    end_time: float | None = None


class MeetingRecord(BaseModel):
    id: str
    user_id: str
    platform: MeetingPlatform
    external_id: str | None = None
    meeting_url: str | None = None
    status: MeetingStatus
    topic: str | None = None
    language: str | None = None
    bot_provider: BotProvider = BotProvider.none
    bot_task_arn: str | None = None
    bot_session_id: str | None = None
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error_detail: str | None = None
    created_at: datetime
    updated_at: datetime


class MeetingRecordsResponse(BaseModel):
    items: list[MeetingRecord] = Field(default_factory=list)


class TranscriptRecord(BaseModel):
    id: str
    meeting_id: str
    user_id: str
    content: str
    speaker_segments: list[SpeakerSegment] | None = None
    word_count: int
    duration_seconds: int | None = None
    source: TranscriptSource
    created_at: datetime
