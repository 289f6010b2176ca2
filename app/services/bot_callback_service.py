import logging
from datetime import UTC, datetime

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.bot import BotCallbackRequest, BotCallbackResponse, BotCallbackStatus
from app.schemas.notification import NotificationType
from app.services.meeting_state_machine import MeetingStateMachine, MeetingTrigger, TransitionOutcome
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.notification_service import NotificationService
from app.services.security_utils import secrets_match
from app.services.transcript_service import TranscriptService, transcript_source_for_platform

logger = logging.getLogger(__name__)

_MISSING_TRANSCRIPT_DETAIL = "Worker reported completion without a transcript."


class BotCallbackService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        transcript_service: TranscriptService | None = None,
        notification_service: NotificationService | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.state_machine = MeetingStateMachine(self.meeting_store)
        self.notification_service = notification_service or NotificationService(
            settings,
            meeting_store=self.meeting_store,
        )
        self.transcript_service = transcript_service or TranscriptService(
            settings,
            meeting_store=self.meeting_store,
            notification_service=self.notification_service,
        )

    def handle(self, callback_secret: str | None, payload: BotCallbackRequest) -> BotCallbackResponse:
        if not secrets_match(callback_secret, self.settings.bot_callback_secret):
            logger.warning("Rejected bot callback reason=invalid_secret")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid callback secret.",
            )

        meeting_id = (payload.meeting_id or "").strip()
        user_id = (payload.user_id or "").strip()
        if not meeting_id or not user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing meeting_id or user_id.",
            )
        try:
            callback_status = BotCallbackStatus(payload.status or "")
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported callback status: {payload.status}.",
            ) from exc

        meeting = self.meeting_store.get_by_id(meeting_id)
        if meeting is None:
            logger.info("Bot callback for unknown meeting meeting_id=%s", meeting_id)
            return BotCallbackResponse(meeting_id=meeting_id, transition=TransitionOutcome.not_found.value)
        if str(meeting.get("user_id")) != user_id:
            logger.warning("Bot callback user mismatch meeting_id=%s user_id=%s", meeting_id, user_id)
            return BotCallbackResponse(meeting_id=meeting_id, transition=TransitionOutcome.ignored.value)

        now = datetime.now(UTC)
        if callback_status == BotCallbackStatus.in_progress:
            result = self.state_machine.apply(meeting_id, MeetingTrigger.meeting_started, {"started_at": now})
            return BotCallbackResponse(meeting_id=meeting_id, transition=result.outcome.value)

        if callback_status == BotCallbackStatus.processing:
            result = self.state_machine.apply(meeting_id, MeetingTrigger.completion_pending, {"ended_at": now})
            return BotCallbackResponse(meeting_id=meeting_id, transition=result.outcome.value)

        if callback_status == BotCallbackStatus.completed and payload.transcript and payload.transcript.strip():
            ingestion = self.transcript_service.ingest(
                meeting,
                content=payload.transcript,
                source=transcript_source_for_platform(meeting.get("platform")),
                speaker_segments=payload.speaker_segments,
                word_count=payload.word_count,
                duration_seconds=payload.duration_seconds,
                completion_updates={"ended_at": now},
            )
            return BotCallbackResponse(
                meeting_id=meeting_id,
                transition=ingestion.outcome.value,
                notification_queued=ingestion.notification_queued,
            )

        if callback_status == BotCallbackStatus.completed:
            error_detail = _MISSING_TRANSCRIPT_DETAIL
        else:
            error_detail = (payload.error_message or "").strip() or "Bot reported failure."
        return self._report_failure(meeting_id, user_id, error_detail, now)

    def _report_failure(self, meeting_id: str, user_id: str, error_detail: str, now: datetime) -> BotCallbackResponse:
        result = self.state_machine.apply(
            meeting_id,
            MeetingTrigger.failure_reported,
            {"error_detail": error_detail, "ended_at": now},
        )
        notification_queued = False
        if result.applied:
            logger.error("Bot failed meeting_id=%s error=%s", meeting_id, error_detail)
            notification_queued = self.notification_service.publish(
                user_id,
                NotificationType.bot_failed,
                meeting_id=meeting_id,
            )
        return BotCallbackResponse(
            meeting_id=meeting_id,
            transition=result.outcome.value,
            notification_queued=notification_queued,
        )
