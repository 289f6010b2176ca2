"""Transcript ingestion shared by the recording webhook and worker callbacks.

Ordering is fixed: the meeting is moved into ``processing`` first, the
transcript is written second (unique per meeting), and only then is the
meeting completed. A redelivery that finds the transcript already stored
simply finishes the completion step; an already terminal meeting is left
alone.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.core.config import Settings
from app.schemas.meeting import MeetingPlatform, TranscriptRecord, TranscriptSource
from app.schemas.notification import NotificationType
from app.services.meeting_state_machine import (
    MeetingStateMachine,
    MeetingTrigger,
    TransitionOutcome,
    is_terminal,
)
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.notification_service import NotificationService
from app.services.transcript_formatter import count_words
from app.services.transcript_store import (
    TranscriptStore,
    build_transcript_document,
    create_transcript_store,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptIngestionResult:
    meeting_id: str
    outcome: TransitionOutcome
    transcript_id: str | None = None
    transcript_created: bool = False
    notification_queued: bool = False


class TranscriptService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        transcript_store: TranscriptStore | None = None,
        notification_service: NotificationService | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.transcript_store = transcript_store or create_transcript_store(settings)
        self.state_machine = MeetingStateMachine(self.meeting_store)
        self.notification_service = notification_service or NotificationService(
            settings,
            meeting_store=self.meeting_store,
        )

    def ingest(
        self,
        meeting: Mapping[str, Any],
        *,
        content: str,
        source: TranscriptSource,
        speaker_segments: list[Mapping[str, Any]] | None = None,
        word_count: int | None = None,
        duration_seconds: int | None = None,
        completion_updates: Mapping[str, Any] | None = None,
    ) -> TranscriptIngestionResult:
        meeting_id = str(meeting["_id"])
        if is_terminal(meeting["status"]):
            logger.info(
                "Transcript ingestion skipped meeting_id=%s status=%s",
                meeting_id,
                meeting["status"],
            )
            return TranscriptIngestionResult(meeting_id=meeting_id, outcome=TransitionOutcome.unchanged)

        pending = self.state_machine.apply(
            meeting_id,
            MeetingTrigger.completion_pending,
            updates=completion_updates,
        )
        if pending.outcome in {TransitionOutcome.ignored, TransitionOutcome.not_found}:
            return TranscriptIngestionResult(meeting_id=meeting_id, outcome=pending.outcome)

        transcript, created = self.transcript_store.save(
            build_transcript_document(
                meeting_id=meeting_id,
                user_id=str(meeting["user_id"]),
                content=content,
                word_count=word_count if word_count else count_words(content),
                source=source.value,
                speaker_segments=speaker_segments,
                duration_seconds=duration_seconds,
            ),
        )
        if not created:
            logger.info("Transcript already stored meeting_id=%s", meeting_id)

        delivered = self.state_machine.apply(meeting_id, MeetingTrigger.transcript_delivered)
        notification_queued = False
        if delivered.applied:
            notification_queued = self.notification_service.publish(
                str(meeting["user_id"]),
                NotificationType.transcript_ready,
                meeting_id=meeting_id,
            )
        return TranscriptIngestionResult(
            meeting_id=meeting_id,
            outcome=delivered.outcome,
            transcript_id=str(transcript["_id"]),
            transcript_created=created,
            notification_queued=notification_queued,
        )

    def get_transcript(self, meeting_id: str) -> TranscriptRecord | None:
        record = self.transcript_store.get_by_meeting_id(meeting_id)
        if not record:
            return None
        return TranscriptRecord(
            id=str(record["_id"]),
            meeting_id=str(record["meeting_id"]),
            user_id=str(record["user_id"]),
            content=str(record.get("content") or ""),
            speaker_segments=record.get("speaker_segments"),
            word_count=int(record.get("word_count") or 0),
            duration_seconds=record.get("duration_seconds"),
            source=TranscriptSource(record["source"]),
            created_at=record["created_at"],
        )


def transcript_source_for_platform(platform: str | None) -> TranscriptSource:
    if platform == MeetingPlatform.google_meet:
        return TranscriptSource.google_meet_bot
    return TranscriptSource.live_bot

