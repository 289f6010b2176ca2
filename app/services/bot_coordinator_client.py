from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib import error, request

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class BotCoordinatorError(Exception):
    pass


class BotCoordinatorUnreachableError(BotCoordinatorError):
    pass


@dataclass(frozen=True)
class BotSession:
    session_id: str
    rtmp_url: str | None
    stream_key: str | None
    status: str | None


class BotCoordinatorClient:
    def __init__(
        self,
        *,
        coordinator_url: str,
        bot_secret: str,
        timeout_seconds: float = 20.0,
        max_attempts: int = 2,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.coordinator_url = coordinator_url
        self.bot_secret = bot_secret
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    def start_session(
        self,
        *,
        meeting_id: str,
        user_id: str,
        topic: str,
        language: str,
    ) -> BotSession:
        if not self.coordinator_url or not self.bot_secret:
            raise BotCoordinatorError("Bot coordinator is not configured.")
        payload = {
            "action": "start_session",
            "meeting_id": meeting_id,
            "user_id": user_id,
            "topic": topic,
            "language": language,
        }
        # Only unreachable-coordinator failures are retried; a rejected
        # request may already have allocated a session.
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=5),
            retry=retry_if_exception_type(BotCoordinatorUnreachableError),
            reraise=True,
        )
        response_payload: dict[str, Any] = {}
        for attempt in retrying:
            with attempt:
                response_payload = self._post_json(payload)

        session_id = response_payload.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            raise BotCoordinatorError("Bot coordinator response did not include session_id.")
        return BotSession(
            session_id=session_id.strip(),
            rtmp_url=_optional_text(response_payload.get("rtmp_url")),
            stream_key=_optional_text(response_payload.get("stream_key")),
            status=_optional_text(response_payload.get("status")),
        )

    def _post_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            self.coordinator_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "X-Bot-Secret": self.bot_secret,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise BotCoordinatorError("Bot coordinator request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise BotCoordinatorError(
                f"Bot coordinator HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            logger.warning("Bot coordinator unreachable reason=%s", exc.reason)
            raise BotCoordinatorUnreachableError(
                f"Bot coordinator connection error: {exc.reason}",
            ) from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise BotCoordinatorError("Bot coordinator returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise BotCoordinatorError("Bot coordinator response is not a JSON object.")
        return parsed_body


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
