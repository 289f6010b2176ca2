from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from app.schemas.meeting import MeetingPlatform, MeetingStatus


class BotLaunchRequest(BaseModel):
    meeting_url: str = ""
    user_id: str | None = None


class BotLaunchResponse(BaseModel):
    meeting_id: str
    platform: MeetingPlatform
    task_arn: str


class ManagedBotRequest(BaseModel):
    meeting_topic: str = ""
    meeting_url: str | None = None
    language: str = "en"
    user_id: str | None = None


class ManagedBotResponse(BaseModel):
    meeting_id: str
    session_id: str
    rtmp_url: str | None = None
    stream_key: str | None = None
    status: MeetingStatus
    topic: str


class BotCallbackStatus(StrEnum):
    in_progress = "in_progress"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class BotCallbackRequest(BaseModel):
    meeting_id: str | None = None
    user_id: str | None = None
    status: str | None = None
    transcript: str | None = None
    speaker_segments: list[dict[str, Any]] | None = None
    word_count: int | None = None
    duration_seconds: int | None = None
    error_message: str | None = None


class BotCallbackResponse(BaseModel):
    status: str = "ok"
    meeting_id: str
    transition: str
    notification_queued: bool = False
