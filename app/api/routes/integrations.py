from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.integration import (
    CalendarConnectionStatus,
    CalendarSyncToggleRequest,
    IntegrationsStatusResponse,
    PlatformConnectionStatus,
)
from app.schemas.meeting import MeetingPlatform
from app.services.auth_service import AuthService, require_current_user
from app.services.calendar_connection_store import (
    GOOGLE_CALENDAR_PROVIDER,
    create_calendar_connection_store,
)
from app.services.calendar_sync_service import CalendarSyncService
from app.services.google_calendar_client import (
    GoogleCalendarError,
    exchange_google_calendar_code,
    resolve_token_expiry,
)
from app.services.platform_connection_store import create_platform_connection_store
from app.services.security_utils import create_access_token, decode_access_token
from app.services.user_store import create_user_store
from app.services.zoom_api_client import ZoomApiClient, ZoomApiError

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger(__name__)
_HTTP_BEARER = HTTPBearer(auto_error=False)
_GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
_GOOGLE_CALENDAR_STATE_TYPE = "google_calendar_oauth_state"
_ZOOM_STATE_TYPE = "zoom_oauth_state"
_OAUTH_STATE_TTL_MINUTES = 10


@router.get("/google-calendar/connect")
def start_google_calendar_oauth(
    access_token: str | None = Query(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_HTTP_BEARER),
) -> RedirectResponse:
    current_user = _resolve_current_user_for_oauth(access_token, credentials)
    settings = get_settings()
    client_id, client_secret, redirect_uri = _resolve_google_calendar_oauth_config(settings)
    if not client_id or not client_secret or not redirect_uri:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=(
                "Google Calendar OAuth is not configured. "
                "Define GOOGLE_CALENDAR_CLIENT_ID, GOOGLE_CALENDAR_CLIENT_SECRET and "
                "GOOGLE_CALENDAR_REDIRECT_URI."
            ),
        )

    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": _GOOGLE_CALENDAR_SCOPE,
            "state": _create_oauth_state(_GOOGLE_CALENDAR_STATE_TYPE, current_user.id, settings),
            "prompt": "consent",
            "access_type": "offline",
            "include_granted_scopes": "true",
        },
    )
    return RedirectResponse(url=f"{_GOOGLE_OAUTH_AUTHORIZE_URL}?{query}", status_code=302)


@router.get("/google-calendar/callback")
def finish_google_calendar_oauth(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    settings = get_settings()
    if error:
        return _build_oauth_redirect("google_calendar", "error", error)
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Missing code or state.",
        )

    user_id = _resolve_user_id_from_state(state, _GOOGLE_CALENDAR_STATE_TYPE, settings)
    client_id, client_secret, redirect_uri = _resolve_google_calendar_oauth_config(settings)
    if not client_id or not client_secret or not redirect_uri:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google Calendar OAuth is not configured.",
        )

    try:
        token_payload = exchange_google_calendar_code(
            code=code,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            timeout_seconds=settings.google_calendar_api_timeout_seconds,
        )
    except GoogleCalendarError as exc:
        logger.warning("Google Calendar code exchange failed user_id=%s error=%s", user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        ) from exc

    google_access_token = str(token_payload.get("access_token", "")).strip()
    if not google_access_token:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Google token response did not include access_token.",
        )

    create_calendar_connection_store(settings).upsert(
        user_id=user_id,
        provider=GOOGLE_CALENDAR_PROVIDER,
        access_token=google_access_token,
        refresh_token=str(token_payload.get("refresh_token", "")).strip() or None,
        token_expires_at=resolve_token_expiry(token_payload),
    )
    logger.info("Google Calendar connected user_id=%s", user_id)
    return _build_oauth_redirect("google_calendar", "success", "connected")


@router.get("/zoom/connect")
def start_zoom_oauth(
    access_token: str | None = Query(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_HTTP_BEARER),
) -> RedirectResponse:
    current_user = _resolve_current_user_for_oauth(access_token, credentials)
    settings = get_settings()
    if not settings.zoom_client_id.strip() or not settings.zoom_redirect_uri.strip():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Zoom OAuth is not configured. Define ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET and ZOOM_REDIRECT_URI.",
        )

    query = urlencode(
        {
            "response_type": "code",
            "client_id": settings.zoom_client_id.strip(),
            "redirect_uri": settings.zoom_redirect_uri.strip(),
            "state": _create_oauth_state(_ZOOM_STATE_TYPE, current_user.id, settings),
        },
    )
    return RedirectResponse(url=f"{settings.zoom_oauth_authorize_url}?{query}", status_code=302)


@router.get("/zoom/callback")
def finish_zoom_oauth(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    settings = get_settings()
    if error:
        return _build_oauth_redirect("zoom", "error", error)
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Missing code or state.",
        )

    user_id = _resolve_user_id_from_state(state, _ZOOM_STATE_TYPE, settings)
    client = ZoomApiClient(
        client_id=settings.zoom_client_id,
        client_secret=settings.zoom_client_secret,
        api_base_url=settings.zoom_api_url,
        oauth_token_url=settings.zoom_oauth_token_url,
        timeout_seconds=settings.zoom_api_timeout_seconds,
    )
    try:
        token_payload = client.exchange_code(code=code, redirect_uri=settings.zoom_redirect_uri.strip())
        zoom_access_token = str(token_payload["access_token"]).strip()
        zoom_user = client.get_current_user(zoom_access_token)
    except ZoomApiError as exc:
        logger.warning("Zoom OAuth failed user_id=%s error=%s", user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        ) from exc

    zoom_user_id = str(zoom_user.get("id") or "").strip()
    account_id = str(zoom_user.get("account_id") or "").strip() or zoom_user_id
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Zoom user response did not include an account id.",
        )

    create_platform_connection_store(settings).upsert(
        user_id=user_id,
        platform=MeetingPlatform.zoom.value,
        account_id=account_id,
        external_user_id=zoom_user_id or None,
        access_token=zoom_access_token,
        refresh_token=str(token_payload.get("refresh_token", "")).strip() or None,
        token_expires_at=resolve_token_expiry(token_payload),
    )
    logger.info("Zoom connected user_id=%s account_id=%s", user_id, account_id)
    return _build_oauth_redirect("zoom", "success", "connected")


@router.get("/status", response_model=IntegrationsStatusResponse)
def get_integrations_status(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> IntegrationsStatusResponse:
    settings = get_settings()
    calendar_connection = create_calendar_connection_store(settings).get(current_user.id, GOOGLE_CALENDAR_PROVIDER)
    platform_connections = create_platform_connection_store(settings).list_by_user(current_user.id)
    return IntegrationsStatusResponse(
        google_calendar=_build_calendar_status(calendar_connection),
        platform_connections=[
            PlatformConnectionStatus(
                platform=str(record["platform"]),
                account_id=str(record["account_id"]),
                connected_at=record.get("created_at"),
            )
            for record in platform_connections
        ],
    )


@router.put("/google-calendar/sync", response_model=CalendarConnectionStatus)
def update_google_calendar_sync(
    payload: CalendarSyncToggleRequest,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> CalendarConnectionStatus:
    settings = get_settings()
    service = CalendarSyncService(settings)
    if not service.set_sync_enabled(current_user.id, payload.enabled):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Google Calendar is not connected.",
        )
    return _build_calendar_status(service.connection_store.get(current_user.id, GOOGLE_CALENDAR_PROVIDER))


def _build_calendar_status(connection: dict | None) -> CalendarConnectionStatus:
    if not connection:
        return CalendarConnectionStatus(provider=GOOGLE_CALENDAR_PROVIDER, connected=False)
    return CalendarConnectionStatus(
        provider=GOOGLE_CALENDAR_PROVIDER,
        connected=True,
        calendar_sync_enabled=bool(connection.get("calendar_sync_enabled")),
        token_expires_at=connection.get("token_expires_at"),
        last_synced_at=connection.get("last_synced_at"),
    )


def _resolve_current_user_for_oauth(
    access_token: str | None,
    credentials: HTTPAuthorizationCredentials | None,
) -> CurrentUserResponse:
    token = (access_token or "").strip()
    if not token and credentials and credentials.scheme.lower() == "bearer":
        token = credentials.credentials.strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=(
                "Authentication required. Send Authorization: Bearer <token> "
                "or access_token query parameter."
            ),
        )
    return AuthService().get_current_user_from_token(token)


def _create_oauth_state(state_type: str, user_id: str, settings: Settings) -> str:
    state_token, _ = create_access_token(
        claims={
            "type": state_type,
            "sub": user_id,
            "nonce": secrets.token_urlsafe(16),
        },
        secret_key=settings.auth_secret_key,
        ttl_minutes=_OAUTH_STATE_TTL_MINUTES,
    )
    return state_token


def _resolve_user_id_from_state(state: str, state_type: str, settings: Settings) -> str:
    decoded_state = decode_access_token(state, settings.auth_secret_key)
    if not decoded_state or decoded_state.get("type") != state_type:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid OAuth state.",
        )
    user_id = str(decoded_state.get("sub", "")).strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="OAuth state does not include a valid user.",
        )
    if not create_user_store(settings).get_user_by_id(user_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found for OAuth state.",
        )
    return user_id


def _build_oauth_redirect(integration: str, status_value: str, message: str) -> RedirectResponse:
    frontend_base_url = get_settings().frontend_base_url.rstrip("/")
    query = urlencode(
        {
            f"{integration}_oauth": status_value,
            f"{integration}_oauth_message": message,
        },
    )
    return RedirectResponse(url=f"{frontend_base_url}/settings?{query}", status_code=302)


def _resolve_google_calendar_oauth_config(settings: Settings) -> tuple[str, str, str]:
    client_id = settings.google_calendar_client_id.strip()
    client_secret = settings.google_calendar_client_secret.strip()
    redirect_uri = settings.google_calendar_redirect_uri.strip()
    return client_id, client_secret, redirect_uri
