import base64
import json
from typing import Any
from urllib import error, parse, request


class ZoomApiError(Exception):
    pass


class ZoomApiClient:
    def __init__(
        self,
        *,
        client_id: str = "",
        client_secret: str = "",
        api_base_url: str = "https://api.zoom.us/v2",
        oauth_token_url: str = "https://zoom.us/oauth/token",
        timeout_seconds: float = 15.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url
        self.timeout_seconds = timeout_seconds

    def exchange_code(self, *, code: str, redirect_uri: str) -> dict[str, Any]:
        if not self.client_id or not self.client_secret:
            raise ZoomApiError("Zoom OAuth client is not configured.")
        credentials = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode("utf-8")).decode("ascii")
        body = parse.urlencode(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        ).encode("utf-8")
        req = request.Request(
            self.oauth_token_url,
            data=body,
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        payload = self._parse_json(self._send(req, "OAuth token exchange"), "OAuth token exchange")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise ZoomApiError("Zoom OAuth token response did not include access_token.")
        return payload

    def get_current_user(self, access_token: str) -> dict[str, Any]:
        req = request.Request(
            f"{self.api_base_url}/users/me",
            headers={"Authorization": f"Bearer {access_token}"},
            method="GET",
        )
        return self._parse_json(self._send(req, "users/me"), "users/me")

    def download_transcript(self, download_url: str, download_token: str | None = None) -> str:
        headers: dict[str, str] = {}
        if download_token:
            headers["Authorization"] = f"Bearer {download_token}"
        req = request.Request(download_url, headers=headers, method="GET")
        return self._send(req, "transcript download").decode("utf-8", errors="replace")

    def _send(self, req: request.Request, action: str) -> bytes:
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return response.read()
        except TimeoutError as exc:
            raise ZoomApiError(f"Zoom {action} request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise ZoomApiError(f"Zoom {action} HTTP {exc.code}: {body or 'empty response body'}") from exc
        except error.URLError as exc:
            raise ZoomApiError(f"Zoom {action} connection error: {exc.reason}") from exc

    def _parse_json(self, raw_body: bytes, action: str) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ZoomApiError(f"Zoom {action} returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise ZoomApiError(f"Zoom {action} response is not a JSON object.")
        return payload
