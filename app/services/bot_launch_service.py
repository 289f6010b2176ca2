import logging
from datetime import UTC, datetime

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.bot import BotLaunchRequest, BotLaunchResponse, ManagedBotRequest, ManagedBotResponse
from app.schemas.meeting import BotProvider, MeetingPlatform, MeetingStatus
from app.services.bot_coordinator_client import BotCoordinatorClient, BotCoordinatorError
from app.services.meeting_state_machine import MeetingStateMachine, MeetingTrigger, is_terminal
from app.services.meeting_store import (
    DuplicateMeetingError,
    MeetingStore,
    build_meeting_document,
    create_meeting_store,
)
from app.services.meeting_url_parser import MeetingLink, MeetingUrlError, classify_meeting_url
from app.services.task_launcher_client import TaskLaunchError, TaskLauncherClient, TaskTemplate

logger = logging.getLogger(__name__)


class BotLaunchService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        task_launcher: TaskLauncherClient | None = None,
        coordinator_client: BotCoordinatorClient | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.state_machine = MeetingStateMachine(self.meeting_store)
        self.task_launcher = task_launcher or TaskLauncherClient(
            api_url=settings.ecs_api_url,
            cluster=settings.ecs_cluster,
            subnets=settings.ecs_subnets,
            security_groups=settings.ecs_security_groups,
            timeout_seconds=settings.task_launch_timeout_seconds,
            max_attempts=settings.task_launch_max_attempts,
            backoff_seconds=settings.task_launch_backoff_seconds,
        )
        self.coordinator_client = coordinator_client or BotCoordinatorClient(
            coordinator_url=settings.bot_coordinator_url,
            bot_secret=settings.bot_secret,
            timeout_seconds=settings.bot_coordinator_timeout_seconds,
            backoff_seconds=settings.task_launch_backoff_seconds,
        )

    def launch(self, user_id: str, payload: BotLaunchRequest) -> BotLaunchResponse:
        try:
            link = classify_meeting_url(payload.meeting_url)
        except MeetingUrlError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        meeting = self._reserve_meeting(user_id, link)
        meeting_id = str(meeting["_id"])
        template = self._resolve_task_template(link.platform)
        environment = {
            "MEETING_URL": link.url,
            "MEETING_ID": meeting_id,
            "USER_ID": user_id,
            "CALLBACK_URL": self.settings.bot_callback_url,
        }

        try:
            task_arn = self.task_launcher.run_task(template, environment)
        except TaskLaunchError as exc:
            logger.error("Bot task launch failed meeting_id=%s error=%s", meeting_id, exc)
            self.state_machine.apply(
                meeting_id,
                MeetingTrigger.failure_reported,
                updates={"error_detail": f"Task launch failed: {exc}", "ended_at": datetime.now(UTC)},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to launch meeting bot.",
            ) from exc

        try:
            self.meeting_store.update(meeting_id, {"bot_task_arn": task_arn})
        except Exception:
            logger.exception("Unable to persist task handle meeting_id=%s task_arn=%s", meeting_id, task_arn)

        logger.info(
            "Bot task launched meeting_id=%s platform=%s task_arn=%s",
            meeting_id,
            link.platform.value,
            task_arn,
        )
        return BotLaunchResponse(meeting_id=meeting_id, platform=link.platform, task_arn=task_arn)

    def start_managed_session(self, user_id: str, payload: ManagedBotRequest) -> ManagedBotResponse:
        topic = payload.meeting_topic.strip()
        if not topic:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="meeting_topic is required.",
            )
        if not self.settings.bot_coordinator_url or not self.settings.bot_secret:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Bot service not configured.",
            )
        language = (payload.language or "en").strip() or "en"

        link: MeetingLink | None = None
        if payload.meeting_url and payload.meeting_url.strip():
            try:
                link = classify_meeting_url(payload.meeting_url)
            except MeetingUrlError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        meeting = self._reserve_meeting(
            user_id,
            link,
            topic=topic,
            language=language,
            bot_provider=BotProvider.managed,
        )
        meeting_id = str(meeting["_id"])

        try:
            session = self.coordinator_client.start_session(
                meeting_id=meeting_id,
                user_id=user_id,
                topic=topic,
                language=language,
            )
        except BotCoordinatorError as exc:
            logger.error("Managed bot session failed meeting_id=%s error=%s", meeting_id, exc)
            self.state_machine.apply(
                meeting_id,
                MeetingTrigger.failure_reported,
                updates={"error_detail": f"Coordinator error: {exc}", "ended_at": datetime.now(UTC)},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to start bot session.",
            ) from exc

        result = self.state_machine.apply(
            meeting_id,
            MeetingTrigger.meeting_started,
            updates={
                "bot_session_id": session.session_id,
                "bot_rtmp_url": session.rtmp_url,
                "bot_stream_key": session.stream_key,
                "started_at": datetime.now(UTC),
            },
        )
        logger.info(
            "Managed bot session started meeting_id=%s session_id=%s transition=%s",
            meeting_id,
            session.session_id,
            result.outcome.value,
        )
        return ManagedBotResponse(
            meeting_id=meeting_id,
            session_id=session.session_id,
            rtmp_url=session.rtmp_url,
            stream_key=session.stream_key,
            status=result.current_status or MeetingStatus.in_progress,
            topic=topic,
        )

    def _reserve_meeting(
        self,
        user_id: str,
        link: MeetingLink | None,
        *,
        topic: str | None = None,
        language: str | None = None,
        bot_provider: BotProvider = BotProvider.worker_task,
    ) -> dict:
        """Create a ``bot_joining`` meeting or claim a scheduled one for the same link."""
        launch_fields = {"bot_provider": bot_provider.value}
        if topic:
            launch_fields["topic"] = topic
        if language:
            launch_fields["language"] = language

        if link is not None:
            existing_meetings = self.meeting_store.find_by_external_id(
                link.platform.value,
                link.external_id,
                user_id=user_id,
            )
            if existing_meetings:
                return self._claim_existing_meeting(existing_meetings[0], link, launch_fields)

        document = build_meeting_document(
            user_id=user_id,
            platform=link.platform.value if link else MeetingPlatform.zoom.value,
            status=MeetingStatus.bot_joining.value,
            external_id=link.external_id if link else None,
            meeting_url=link.url if link else None,
            topic=topic,
            language=language,
            bot_provider=bot_provider.value,
        )
        try:
            return self.meeting_store.create(document)
        except DuplicateMeetingError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A bot is already assigned to this meeting.",
            ) from exc

    def _claim_existing_meeting(self, existing: dict, link: MeetingLink, launch_fields: dict) -> dict:
        meeting_id = str(existing["_id"])
        if is_terminal(existing["status"]):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Meeting already {existing['status']}.",
            )
        result = self.state_machine.apply(
            meeting_id,
            MeetingTrigger.bot_launched,
            updates={**launch_fields, "meeting_url": existing.get("meeting_url") or link.url},
        )
        if not result.applied:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A bot is already assigned to this meeting.",
            )
        claimed = self.meeting_store.get_by_id(meeting_id)
        return claimed or existing

    def _resolve_task_template(self, platform: MeetingPlatform) -> TaskTemplate:
        if platform == MeetingPlatform.google_meet:
            return TaskTemplate(
                task_definition=self.settings.ecs_gmeet_task_definition,
                container_name=self.settings.ecs_gmeet_container_name,
            )
        return TaskTemplate(
            task_definition=self.settings.ecs_zoom_task_definition,
            container_name=self.settings.ecs_zoom_container_name,
        )
