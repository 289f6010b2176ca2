import html
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.core.config import Settings, get_settings
from app.schemas.notification import (
    NotificationDeliveryStatus,
    NotificationPreferences,
    NotificationResult,
    NotificationType,
)
from app.services.email_client import EmailClient, EmailDeliveryError
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.notification_outbox_store import (
    NotificationOutboxStore,
    OutboxStatus,
    build_outbox_document,
    create_notification_outbox_store,
)
from app.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)

DEFAULT_MEETING_TOPIC = "your meeting"

_PREFERENCE_FIELD_BY_TYPE = {
    NotificationType.transcript_ready: "email_on_transcript_ready",
    NotificationType.phase1_complete: "email_on_phase1_complete",
    NotificationType.bot_failed: "email_on_bot_failed",
}
_BUTTON_STYLE = (
    "display: inline-block; background: #4F46E5; color: white; padding: 12px 24px; "
    "border-radius: 8px; text-decoration: none; margin-top: 16px;"
)
_CONTAINER_STYLE = (
    "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; "
    "max-width: 600px; margin: 0 auto; padding: 20px;"
)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str


@dataclass
class OutboxDrainSummary:
    sent: int = 0
    skipped: int = 0
    retried: int = 0
    dead: int = 0


class NotificationService:
    def __init__(
        self,
        settings: Settings,
        user_store: UserStore | None = None,
        meeting_store: MeetingStore | None = None,
        outbox_store: NotificationOutboxStore | None = None,
        email_client: EmailClient | None = None,
    ) -> None:
        self.settings = settings
        self.user_store = user_store or create_user_store(settings)
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.outbox_store = outbox_store or create_notification_outbox_store(settings)
        self.email_client = email_client or EmailClient(
            api_url=settings.email_api_url,
            from_address=settings.email_from_address,
            api_key=settings.email_api_key,
            timeout_seconds=settings.email_api_timeout_seconds,
        )

    def dispatch(
        self,
        user_id: str,
        notification_type: str,
        meeting_id: str | None = None,
    ) -> NotificationResult:
        """Send one notification email right away.

        Raises EmailDeliveryError when the mail provider rejects the message;
        preference opt-outs and unknown recipients are reported as results.
        """
        if not self.is_enabled(user_id, notification_type):
            logger.info(
                "Notification disabled user_id=%s type=%s meeting_id=%s",
                user_id,
                notification_type,
                meeting_id,
            )
            return NotificationResult(
                status=NotificationDeliveryStatus.disabled,
                message="Notification disabled by user preferences",
            )

        user_record = self.user_store.get_user_by_id(user_id)
        email = str((user_record or {}).get("email") or "").strip()
        if not email or "@" not in email:
            logger.warning("Notification skipped user_id=%s reason=missing_email", user_id)
            return NotificationResult(
                status=NotificationDeliveryStatus.skipped,
                message="User email not found",
            )

        rendered = render_notification_email(
            notification_type,
            topic=self._resolve_topic(meeting_id),
            app_url=self.settings.frontend_base_url.rstrip("/"),
        )
        self.email_client.send_email(to_address=email, subject=rendered.subject, html_body=rendered.html_body)
        logger.info("Notification sent user_id=%s type=%s meeting_id=%s", user_id, notification_type, meeting_id)
        return NotificationResult(status=NotificationDeliveryStatus.sent, message="Notification sent")

    def is_enabled(self, user_id: str, notification_type: str) -> bool:
        preference_field = _PREFERENCE_FIELD_BY_TYPE.get(_parse_type(notification_type))
        if preference_field is None:
            return True
        stored = self.user_store.get_notification_preferences(user_id)
        if stored is None:
            return True
        return bool(stored.get(preference_field, True))

    def get_preferences(self, user_id: str) -> NotificationPreferences:
        stored = self.user_store.get_notification_preferences(user_id)
        return NotificationPreferences(**(stored or {}))

    def update_preferences(self, user_id: str, updates: dict[str, bool]) -> NotificationPreferences:
        return NotificationPreferences(**self.user_store.upsert_notification_preferences(user_id, updates))

    def publish(
        self,
        user_id: str,
        notification_type: NotificationType,
        meeting_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        """Queue a notification in the outbox; publishing never fails the caller."""
        key = dedupe_key or f"{notification_type.value}:{meeting_id or user_id}"
        try:
            _, created = self.outbox_store.enqueue(
                build_outbox_document(
                    user_id=user_id,
                    notification_type=notification_type.value,
                    meeting_id=meeting_id,
                    dedupe_key=key,
                ),
            )
        except Exception:
            logger.exception("Notification publish failed user_id=%s dedupe_key=%s", user_id, key)
            return False
        if created:
            logger.info("Notification queued user_id=%s dedupe_key=%s", user_id, key)
        return created

    def deliver_pending(self, limit: int = 50, now: datetime | None = None) -> OutboxDrainSummary:
        summary = OutboxDrainSummary()
        current_time = now or datetime.now(UTC)
        lease_until = current_time + timedelta(seconds=self.settings.notification_retry_base_seconds)
        for record in self.outbox_store.list_due(current_time, limit):
            record_id = str(record["_id"])
            if not self.outbox_store.claim(record_id, current_time, lease_until):
                continue
            self._deliver_record(record, current_time, summary)
        return summary

    def _deliver_record(self, record: dict, now: datetime, summary: OutboxDrainSummary) -> None:
        record_id = str(record["_id"])
        attempts = int(record.get("attempts") or 0) + 1
        try:
            result = self.dispatch(
                str(record["user_id"]),
                str(record["notification_type"]),
                record.get("meeting_id"),
            )
        except EmailDeliveryError as exc:
            self._schedule_retry(record_id, attempts, str(exc), now, summary)
            return
        except Exception as exc:
            logger.exception("Notification delivery crashed outbox_id=%s", record_id)
            self._schedule_retry(record_id, attempts, str(exc), now, summary)
            return

        if result.status == NotificationDeliveryStatus.sent:
            self.outbox_store.update(record_id, {"status": OutboxStatus.sent.value, "attempts": attempts})
            summary.sent += 1
            return
        self.outbox_store.update(
            record_id,
            {"status": OutboxStatus.skipped.value, "attempts": attempts, "last_error": result.message},
        )
        summary.skipped += 1

    def _schedule_retry(
        self,
        record_id: str,
        attempts: int,
        error_message: str,
        now: datetime,
        summary: OutboxDrainSummary,
    ) -> None:
        if attempts >= self.settings.notification_max_attempts:
            logger.error("Notification dead outbox_id=%s attempts=%s error=%s", record_id, attempts, error_message)
            self.outbox_store.update(
                record_id,
                {"status": OutboxStatus.dead.value, "attempts": attempts, "last_error": error_message},
            )
            summary.dead += 1
            return

        delay_seconds = self.settings.notification_retry_base_seconds * (2 ** (attempts - 1))
        logger.warning(
            "Notification delivery failed outbox_id=%s attempts=%s retry_in=%ss error=%s",
            record_id,
            attempts,
            delay_seconds,
            error_message,
        )
        self.outbox_store.update(
            record_id,
            {
                "attempts": attempts,
                "last_error": error_message,
                "next_attempt_at": now + timedelta(seconds=delay_seconds),
            },
        )
        summary.retried += 1

    def _resolve_topic(self, meeting_id: str | None) -> str:
        if not meeting_id:
            return DEFAULT_MEETING_TOPIC
        meeting = self.meeting_store.get_by_id(meeting_id)
        topic = str((meeting or {}).get("topic") or "").strip()
        return topic or DEFAULT_MEETING_TOPIC


def render_notification_email(notification_type: str, *, topic: str, app_url: str) -> RenderedEmail:
    safe_topic = html.escape(topic)
    safe_url = html.escape(app_url, quote=True)
    parsed_type = _parse_type(notification_type)

    if parsed_type == NotificationType.transcript_ready:
        return RenderedEmail(
            subject=f"Transcript ready: {topic}",
            html_body=(
                f'<div style="{_CONTAINER_STYLE}">'
                '<h2 style="color: #4F46E5;">Your meeting transcript is ready</h2>'
                f"<p>The transcript for <strong>{safe_topic}</strong> has been processed and is ready for analysis.</p>"
                f'<a href="{safe_url}/meetings" style="{_BUTTON_STYLE}">View Transcript</a>'
                "</div>"
            ),
        )
    if parsed_type == NotificationType.phase1_complete:
        return RenderedEmail(
            subject=f"Phase 1 analysis complete: {topic}",
            html_body=(
                f'<div style="{_CONTAINER_STYLE}">'
                '<h2 style="color: #4F46E5;">Phase 1 Analysis Complete</h2>'
                f"<p>Requirements extraction for <strong>{safe_topic}</strong> is complete.</p>"
                f'<a href="{safe_url}/" style="{_BUTTON_STYLE}">View Project</a>'
                "</div>"
            ),
        )
    if parsed_type == NotificationType.bot_failed:
        return RenderedEmail(
            subject=f"Meeting bot failed: {topic}",
            html_body=(
                f'<div style="{_CONTAINER_STYLE}">'
                '<h2 style="color: #DC2626;">We could not capture your meeting</h2>'
                f"<p>The bot for <strong>{safe_topic}</strong> stopped before a transcript was produced.</p>"
                f'<a href="{safe_url}/meetings" style="{_BUTTON_STYLE}">Open Meetings</a>'
                "</div>"
            ),
        )
    return RenderedEmail(
        subject="Meeting Bot Notification",
        html_body="<p>You have a new notification from Meeting Bot.</p>",
    )


def drain_notification_outbox() -> None:
    """Background entry point used after responses and by the scheduler."""
    try:
        summary = NotificationService(get_settings()).deliver_pending()
    except Exception:
        logger.exception("Notification outbox drain failed")
        return
    if summary.sent or summary.retried or summary.dead or summary.skipped:
        logger.info(
            "Notification outbox drained sent=%s skipped=%s retried=%s dead=%s",
            summary.sent,
            summary.skipped,
            summary.retried,
            summary.dead,
        )


def _parse_type(notification_type: str) -> NotificationType | None:
    try:
        return NotificationType(notification_type)
    except ValueError:
        return None
