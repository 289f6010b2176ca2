import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.notification import (
    NotificationPreferences,
    NotificationPreferencesUpdateRequest,
    NotificationResult,
    NotificationSendRequest,
)
from app.services.auth_service import require_current_user
from app.services.email_client import EmailDeliveryError
from app.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)


@router.post("/send", response_model=NotificationResult)
def send_notification(
    payload: NotificationSendRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> NotificationResult:
    service = NotificationService(get_settings())
    try:
        return service.dispatch(current_user.id, payload.type, meeting_id=payload.meeting_id)
    except EmailDeliveryError as exc:
        logger.error("Notification delivery failed user_id=%s type=%s error=%s", current_user.id, payload.type, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send notification.",
        ) from exc


@router.get("/preferences", response_model=NotificationPreferences)
def get_notification_preferences(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> NotificationPreferences:
    service = NotificationService(get_settings())
    return service.get_preferences(current_user.id)


@router.put("/preferences", response_model=NotificationPreferences)
def update_notification_preferences(
    payload: NotificationPreferencesUpdateRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> NotificationPreferences:
    service = NotificationService(get_settings())
    return service.update_preferences(current_user.id, payload.model_dump(exclude_none=True))
