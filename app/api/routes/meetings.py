from fastapi import APIRouter, Depends, Query

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.meeting import MeetingRecord, MeetingRecordsResponse, TranscriptRecord
from app.services.auth_service import require_current_user
from app.services.meeting_service import MeetingService

router = APIRouter(prefix="/meetings", tags=["meetings"])


@router.get("", response_model=MeetingRecordsResponse)
def list_meetings(
    limit: int = Query(default=50, ge=1, le=200),
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> MeetingRecordsResponse:
    service = MeetingService(get_settings())
    return service.list_meetings(current_user.id, limit)


@router.get("/{meeting_id}", response_model=MeetingRecord)
def get_meeting(
    meeting_id: str,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> MeetingRecord:
    service = MeetingService(get_settings())
    return service.get_meeting(current_user.id, meeting_id)


@router.get("/{meeting_id}/transcript", response_model=TranscriptRecord)
def get_meeting_transcript(
    meeting_id: str,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> TranscriptRecord:
    service = MeetingService(get_settings())
    return service.get_transcript(current_user.id, meeting_id)
