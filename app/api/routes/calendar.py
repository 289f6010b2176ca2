import logging

from fastapi import APIRouter, Header, HTTPException, status

from app.core.config import get_settings
from app.schemas.integration import CalendarSyncResponse
from app.services.calendar_sync_service import CalendarSyncService
from app.services.security_utils import secrets_match

router = APIRouter(prefix="/calendar", tags=["calendar"])
logger = logging.getLogger(__name__)


@router.post("/sync", response_model=CalendarSyncResponse)
def run_calendar_sync(
    x_cron_secret: str | None = Header(default=None),
) -> CalendarSyncResponse:
    settings = get_settings()
    if not secrets_match(x_cron_secret, settings.calendar_sync_secret):
        logger.warning("Rejected calendar sync reason=invalid_cron_secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret.",
        )
    return CalendarSyncService(settings).sync_all()
