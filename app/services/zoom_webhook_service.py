import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.meeting import BotProvider, MeetingPlatform, MeetingStatus, TranscriptSource
from app.schemas.webhook import UrlValidationResponse, ZoomWebhookEventType, ZoomWebhookResponse
from app.services.meeting_state_machine import MeetingStateMachine, MeetingTrigger, TransitionOutcome, is_terminal
from app.services.meeting_store import (
    DuplicateMeetingError,
    MeetingStore,
    build_meeting_document,
    create_meeting_store,
)
from app.services.platform_connection_store import PlatformConnectionStore, create_platform_connection_store
from app.services.security_utils import compute_hmac_sha256_hex, is_valid_request_signature
from app.services.transcript_formatter import format_caption_transcript
from app.services.transcript_service import TranscriptService
from app.services.zoom_api_client import ZoomApiClient, ZoomApiError

logger = logging.getLogger(__name__)

_TRANSCRIPT_FILE_TYPES = {"TRANSCRIPT", "CC"}
_DEFAULT_TOPIC = "Zoom Meeting"
_SETTLED_OUTCOMES = {TransitionOutcome.applied, TransitionOutcome.unchanged}


class ZoomWebhookService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        platform_connection_store: PlatformConnectionStore | None = None,
        transcript_service: TranscriptService | None = None,
        zoom_client: ZoomApiClient | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.platform_connection_store = platform_connection_store or create_platform_connection_store(settings)
        self.state_machine = MeetingStateMachine(self.meeting_store)
        self.transcript_service = transcript_service or TranscriptService(settings, meeting_store=self.meeting_store)
        self.zoom_client = zoom_client or ZoomApiClient(
            client_id=settings.zoom_client_id,
            client_secret=settings.zoom_client_secret,
            api_base_url=settings.zoom_api_url,
            oauth_token_url=settings.zoom_oauth_token_url,
            timeout_seconds=settings.zoom_api_timeout_seconds,
        )

    def handle(
        self,
        payload: Mapping[str, Any],
        raw_body: bytes,
        signature: str | None,
        timestamp: str | None,
    ) -> ZoomWebhookResponse | UrlValidationResponse:
        secret = self.settings.zoom_webhook_secret_token
        event = payload.get("event")
        if event == ZoomWebhookEventType.url_validation:
            return self._answer_url_validation(payload, secret)

        if not is_valid_request_signature(
            secret=secret,
            timestamp=timestamp,
            raw_body=raw_body,
            signature=signature,
        ):
            logger.warning("Rejected webhook event=%s reason=invalid_signature", event)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature.",
            )

        try:
            event_type = ZoomWebhookEventType(str(event))
        except ValueError:
            logger.info("Ignoring unsupported webhook event=%s", event)
            return ZoomWebhookResponse(event=str(event) if event else None, detail="Unsupported event ignored.")

        event_object = _event_object(payload)
        if event_type == ZoomWebhookEventType.meeting_started:
            return self._apply_to_meetings(
                event_type,
                event_object,
                MeetingTrigger.meeting_started,
                "started_at",
            )
        if event_type == ZoomWebhookEventType.meeting_ended:
            return self._apply_to_meetings(
                event_type,
                event_object,
                MeetingTrigger.completion_pending,
                "ended_at",
            )
        return self._handle_recording_completed(payload, event_object)

    def _answer_url_validation(self, payload: Mapping[str, Any], secret: str) -> UrlValidationResponse:
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Webhook secret is not configured.",
            )
        inner_payload = payload.get("payload")
        plain_token = inner_payload.get("plainToken") if isinstance(inner_payload, Mapping) else None
        if not isinstance(plain_token, str) or not plain_token:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="payload.plainToken is required.",
            )
        return UrlValidationResponse(
            plainToken=plain_token,
            encryptedToken=compute_hmac_sha256_hex(secret, plain_token),
        )

    def _apply_to_meetings(
        self,
        event_type: ZoomWebhookEventType,
        event_object: Mapping[str, Any],
        trigger: MeetingTrigger,
        timestamp_field: str,
    ) -> ZoomWebhookResponse:
        zoom_meeting_id = _zoom_meeting_id(event_object)
        if not zoom_meeting_id:
            return ZoomWebhookResponse(event=event_type.value, detail="Event does not include a meeting id.")

        touched: list[str] = []
        for meeting in self.meeting_store.find_by_external_id(MeetingPlatform.zoom.value, zoom_meeting_id):
            result = self.state_machine.apply(
                str(meeting["_id"]),
                trigger,
                updates={timestamp_field: datetime.now(UTC)},
            )
            if result.outcome in _SETTLED_OUTCOMES:
                touched.append(result.meeting_id)
        logger.info(
            "Webhook applied event=%s zoom_meeting_id=%s meetings=%s",
            event_type.value,
            zoom_meeting_id,
            len(touched),
        )
        return ZoomWebhookResponse(event=event_type.value, handled=bool(touched), meeting_ids=touched)

    def _handle_recording_completed(
        self,
        payload: Mapping[str, Any],
        event_object: Mapping[str, Any],
    ) -> ZoomWebhookResponse:
        event_name = ZoomWebhookEventType.recording_completed.value
        transcript_file = _find_transcript_file(event_object)
        if transcript_file is None:
            logger.info("No transcript file in recording event")
            return ZoomWebhookResponse(event=event_name, detail="No transcript file in recording.")

        zoom_meeting_id = _zoom_meeting_id(event_object)
        if not zoom_meeting_id:
            return ZoomWebhookResponse(event=event_name, detail="Event does not include a meeting id.")

        meetings = self.meeting_store.find_by_external_id(MeetingPlatform.zoom.value, zoom_meeting_id)
        owner_user_id: str | None = None
        if not meetings:
            owner_user_id = self._resolve_owner_user_id(payload, event_object)
            if owner_user_id is None:
                logger.info("No platform connection for recording zoom_meeting_id=%s", zoom_meeting_id)
                return ZoomWebhookResponse(event=event_name, detail="No matching platform connection.")
        elif all(is_terminal(meeting["status"]) for meeting in meetings):
            return ZoomWebhookResponse(
                event=event_name,
                handled=True,
                meeting_ids=[str(meeting["_id"]) for meeting in meetings],
                detail="Meetings already finalized.",
            )

        download_url = transcript_file.get("download_url")
        if not isinstance(download_url, str) or not download_url:
            return ZoomWebhookResponse(event=event_name, detail="Transcript file has no download_url.")
        download_token = transcript_file.get("download_token") or payload.get("download_token")
        try:
            raw_captions = self.zoom_client.download_transcript(
                download_url,
                download_token if isinstance(download_token, str) else None,
            )
        except ZoomApiError as exc:
            logger.error("Transcript download failed zoom_meeting_id=%s error=%s", zoom_meeting_id, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Transcript download failed.",
            ) from exc

        if owner_user_id is not None:
            meetings = [self._create_webhook_meeting(owner_user_id, zoom_meeting_id, event_object)]

        formatted = format_caption_transcript(raw_captions)
        duration_seconds = _duration_seconds(event_object)
        ingested: list[str] = []
        for meeting in meetings:
            completion_updates = None if meeting.get("ended_at") else {"ended_at": datetime.now(UTC)}
            result = self.transcript_service.ingest(
                meeting,
                content=formatted.text,
                source=TranscriptSource.zoom_recording,
                speaker_segments=formatted.speaker_segments,
                word_count=formatted.word_count,
                duration_seconds=duration_seconds,
                completion_updates=completion_updates,
            )
            if result.outcome in _SETTLED_OUTCOMES:
                ingested.append(result.meeting_id)
        return ZoomWebhookResponse(event=event_name, handled=bool(ingested), meeting_ids=ingested)

    def _resolve_owner_user_id(
        self,
        payload: Mapping[str, Any],
        event_object: Mapping[str, Any],
    ) -> str | None:
        platform = MeetingPlatform.zoom.value
        host_id = _text(event_object.get("host_id"))
        inner_payload = payload.get("payload")
        account_id = _text(inner_payload.get("account_id")) if isinstance(inner_payload, Mapping) else None

        connection = None
        if host_id:
            connection = self.platform_connection_store.find_by_external_user_id(platform, host_id)
        if connection is None and account_id:
            connection = self.platform_connection_store.find_by_account_id(platform, account_id)
        if connection is None and host_id:
            connection = self.platform_connection_store.find_by_account_id(platform, host_id)
        return str(connection["user_id"]) if connection else None

    def _create_webhook_meeting(
        self,
        user_id: str,
        zoom_meeting_id: str,
        event_object: Mapping[str, Any],
    ) -> dict[str, Any]:
        document = build_meeting_document(
            user_id=user_id,
            platform=MeetingPlatform.zoom.value,
            status=MeetingStatus.processing.value,
            external_id=zoom_meeting_id,
            meeting_url=_text(event_object.get("share_url")),
            topic=_text(event_object.get("topic")) or _DEFAULT_TOPIC,
            bot_provider=BotProvider.none.value,
            ended_at=datetime.now(UTC),
        )
        try:
            return self.meeting_store.create(document)
        except DuplicateMeetingError:
            existing = self.meeting_store.find_by_external_id(
                MeetingPlatform.zoom.value,
                zoom_meeting_id,
                user_id=user_id,
            )
            if not existing:
                raise
            return existing[0]


def _event_object(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    inner_payload = payload.get("payload")
    if not isinstance(inner_payload, Mapping):
        return {}
    event_object = inner_payload.get("object")
    return event_object if isinstance(event_object, Mapping) else {}


def _zoom_meeting_id(event_object: Mapping[str, Any]) -> str | None:
    raw_id = event_object.get("id")
    if raw_id is None or isinstance(raw_id, bool):
        return None
    cleaned = str(raw_id).strip()
    return cleaned or None


def _find_transcript_file(event_object: Mapping[str, Any]) -> Mapping[str, Any] | None:
    recording_files = event_object.get("recording_files")
    if not isinstance(recording_files, list):
        return None
    for recording_file in recording_files:
        if isinstance(recording_file, Mapping) and recording_file.get("file_type") in _TRANSCRIPT_FILE_TYPES:
            return recording_file
    return None


def _duration_seconds(event_object: Mapping[str, Any]) -> int | None:
    raw_duration = event_object.get("duration")
    if isinstance(raw_duration, bool) or not isinstance(raw_duration, int | float):
        return None
    return int(raw_duration * 60)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None
