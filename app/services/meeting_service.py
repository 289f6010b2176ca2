from collections.abc import Mapping
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.meeting import MeetingRecord, MeetingRecordsResponse, TranscriptRecord
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.transcript_store import TranscriptStore, create_transcript_store
from app.services.transcript_service import TranscriptService


class MeetingService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        transcript_store: TranscriptStore | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.transcript_store = transcript_store or create_transcript_store(settings)

    def list_meetings(self, user_id: str, limit: int) -> MeetingRecordsResponse:
        records = self.meeting_store.list_by_user(user_id, limit)
        return MeetingRecordsResponse(items=[to_meeting_record(record) for record in records])

    def get_meeting(self, user_id: str, meeting_id: str) -> MeetingRecord:
        return to_meeting_record(self._get_owned_meeting(user_id, meeting_id))

    def get_transcript(self, user_id: str, meeting_id: str) -> TranscriptRecord:
        self._get_owned_meeting(user_id, meeting_id)
        transcript = TranscriptService(
            self.settings,
            meeting_store=self.meeting_store,
            transcript_store=self.transcript_store,
        ).get_transcript(meeting_id)
        if transcript is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Transcript not found.",
            )
        return transcript

    def _get_owned_meeting(self, user_id: str, meeting_id: str) -> dict[str, Any]:
        record = self.meeting_store.get_by_id(meeting_id)
        if not record or str(record.get("user_id")) != user_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Meeting not found.",
            )
        return record


def to_meeting_record(record: Mapping[str, Any]) -> MeetingRecord:
    return MeetingRecord(
        id=str(record["_id"]),
        user_id=str(record["user_id"]),
        platform=record["platform"],
        external_id=record.get("external_id"),
        meeting_url=record.get("meeting_url"),
        status=record["status"],
        topic=record.get("topic"),
        language=record.get("language"),
        bot_provider=record.get("bot_provider") or "none",
        bot_task_arn=record.get("bot_task_arn"),
        bot_session_id=record.get("bot_session_id"),
        scheduled_for=record.get("scheduled_for"),
        started_at=record.get("started_at"),
        ended_at=record.get("ended_at"),
        error_detail=record.get("error_detail"),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )
