import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.bot import (
    BotCallbackRequest,
    BotCallbackResponse,
    BotLaunchRequest,
    BotLaunchResponse,
    ManagedBotRequest,
    ManagedBotResponse,
)
from app.services.auth_service import require_current_user, resolve_acting_user_id
from app.services.bot_callback_service import BotCallbackService
from app.services.bot_launch_service import BotLaunchService
from app.services.notification_service import drain_notification_outbox

router = APIRouter(prefix="/bots", tags=["bots"])
logger = logging.getLogger(__name__)


@router.post("/launch", response_model=BotLaunchResponse)
def launch_bot(
    payload: BotLaunchRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> BotLaunchResponse:
    user_id = resolve_acting_user_id(current_user, payload.user_id)
    service = BotLaunchService(get_settings())
    return service.launch(user_id, payload)


@router.post("/managed", response_model=ManagedBotResponse)
def start_managed_bot(
    payload: ManagedBotRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> ManagedBotResponse:
    user_id = resolve_acting_user_id(current_user, payload.user_id)
    service = BotLaunchService(get_settings())
    return service.start_managed_session(user_id, payload)


@router.post("/callback", response_model=BotCallbackResponse)
def receive_bot_callback(
    payload: BotCallbackRequest,
    background_tasks: BackgroundTasks,
    x_callback_secret: str | None = Header(default=None),
) -> BotCallbackResponse:
    service = BotCallbackService(get_settings())
    response = service.handle(x_callback_secret, payload)
    if response.notification_queued:
        background_tasks.add_task(drain_notification_outbox)
    logger.info(
        "Bot callback processed meeting_id=%s status=%s transition=%s",
        response.meeting_id,
        payload.status,
        response.transition,
    )
    return response
