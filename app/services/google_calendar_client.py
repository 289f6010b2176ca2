import json
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib import error, parse, request

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GoogleCalendarError(Exception):
    pass


class GoogleCalendarClient:
    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        calendar_id: str = "primary",
        token_expires_at: datetime | None = None,
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://www.googleapis.com/calendar/v3",
        oauth_token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token or ""
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_id = calendar_id
        self.token_expires_at = token_expires_at
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url
        self.token_refreshed = False

    def is_token_expired(self, now: datetime | None = None) -> bool:
        if not self.access_token:
            return True
        if self.token_expires_at is None:
            return False
        reference = now or datetime.now(UTC)
        return self.token_expires_at <= reference

    def list_events(self, *, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        """Expanded single events in ``[time_min, time_max)``, following pagination."""
        endpoint_path = f"/calendars/{parse.quote(self.calendar_id, safe='')}/events"
        events: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            query_params = {
                "timeMin": _format_rfc3339(time_min),
                "timeMax": _format_rfc3339(time_max),
                "singleEvents": "true",
                "orderBy": "startTime",
            }
            if page_token:
                query_params["pageToken"] = page_token
            response_payload = self._request_json("GET", f"{endpoint_path}?{parse.urlencode(query_params)}")
            raw_items = response_payload.get("items")
            if isinstance(raw_items, list):
                events.extend(item for item in raw_items if isinstance(item, dict))
            next_page_token = response_payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return events
            page_token = next_page_token

    def refresh_access_token(self) -> None:
        if not self._can_refresh_access_token():
            raise GoogleCalendarError(
                "Google Calendar refresh token flow is not configured.",
            )
        payload = _post_token_form(
            self.oauth_token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout_seconds=self.timeout_seconds,
            action="refresh",
        )
        new_access_token = payload.get("access_token")
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GoogleCalendarError("Google OAuth refresh did not include access_token.")
        self.access_token = new_access_token.strip()
        refreshed_refresh_token = payload.get("refresh_token")
        if isinstance(refreshed_refresh_token, str) and refreshed_refresh_token.strip():
            self.refresh_token = refreshed_refresh_token.strip()
        self.token_expires_at = resolve_token_expiry(payload)
        self.token_refreshed = True

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.access_token and self._can_refresh_access_token():
            self.refresh_access_token()

        target = f"{self.api_base_url}{path}"
        raw_payload: bytes | None = None
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")

        req = request.Request(
            target,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError("Google Calendar API request timed out.") from exc
        except error.HTTPError as exc:
            if exc.code == 401 and self._can_refresh_access_token() and not self.token_refreshed:
                try:
                    self.refresh_access_token()
                except GoogleCalendarError:
                    pass
                else:
                    return self._request_json(method, path, payload)
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCalendarError(
                f"Google Calendar API HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise GoogleCalendarError(
                f"Google Calendar API connection error: {exc.reason}",
            ) from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleCalendarError("Google Calendar API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GoogleCalendarError("Google Calendar API response is not a JSON object.")
        return parsed_body

    def _can_refresh_access_token(self) -> bool:
        return bool(
            self.refresh_token.strip()
            and self.client_id.strip()
            and self.client_secret.strip()
        )


def exchange_google_calendar_code(
    *,
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    timeout_seconds: float = 15.0,
    oauth_token_url: str = GOOGLE_OAUTH_TOKEN_URL,
) -> dict[str, Any]:
    return _post_token_form(
        oauth_token_url,
        {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout_seconds=timeout_seconds,
        action="code exchange",
    )


def resolve_token_expiry(token_payload: dict[str, Any], now: datetime | None = None) -> datetime | None:
    raw_expires_in = token_payload.get("expires_in")
    try:
        expires_in = int(raw_expires_in)
    except (TypeError, ValueError):
        return None
    return (now or datetime.now(UTC)) + timedelta(seconds=expires_in)


def parse_event_start(event: dict[str, Any]) -> datetime | None:
    start = event.get("start")
    if not isinstance(start, dict):
        return None
    raw_value = start.get("dateTime") or start.get("date")
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw_value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _post_token_form(
    url: str,
    fields: dict[str, str],
    *,
    timeout_seconds: float,
    action: str,
) -> dict[str, Any]:
    body = parse.urlencode(fields).encode("utf-8")
    req = request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            response_body = response.read()
    except TimeoutError as exc:
        raise GoogleCalendarError(f"Google OAuth {action} request timed out.") from exc
    except error.HTTPError as exc:
        body_text = exc.read().decode("utf-8", errors="ignore")
        raise GoogleCalendarError(
            f"Google OAuth {action} HTTP {exc.code}: {body_text or 'empty response body'}",
        ) from exc
    except error.URLError as exc:
        raise GoogleCalendarError(
            f"Google OAuth {action} connection error: {exc.reason}",
        ) from exc

    try:
        payload = json.loads(response_body.decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise GoogleCalendarError(f"Google OAuth {action} returned invalid JSON.") from exc

    if not isinstance(payload, dict):
        raise GoogleCalendarError(f"Google OAuth {action} response is not a JSON object.")
    return payload


def _format_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
