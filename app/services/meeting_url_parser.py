"""Recognition of conferencing links for the supported meeting platforms."""

from __future__ import annotations

import re
from dataclasses import dataclass

from app.schemas.meeting import MeetingPlatform

_ZOOM_URL_PATTERN = re.compile(r"https://[\w.-]+\.zoom\.us/j/(\d+)")
_GOOGLE_MEET_URL_PATTERN = re.compile(r"https://meet\.google\.com/([a-z]{3}-[a-z]{4}-[a-z]{3})")

_PLATFORM_PATTERNS: tuple[tuple[MeetingPlatform, re.Pattern[str]], ...] = (
    (MeetingPlatform.zoom, _ZOOM_URL_PATTERN),
    (MeetingPlatform.google_meet, _GOOGLE_MEET_URL_PATTERN),
)


class MeetingUrlError(ValueError):
    pass


@dataclass(frozen=True)
class MeetingLink:
    platform: MeetingPlatform
    external_id: str
    url: str


def classify_meeting_url(meeting_url: str) -> MeetingLink:
    """Return the platform and external identifier of a meeting URL.

    Raises MeetingUrlError when the URL matches neither a Zoom join link nor
    a Google Meet code link.
    """
    cleaned_url = (meeting_url or "").strip()
    if not cleaned_url:
        raise MeetingUrlError("meeting_url is required.")

    for platform, pattern in _PLATFORM_PATTERNS:
        match = pattern.search(cleaned_url)
        if match:
            return MeetingLink(platform=platform, external_id=match.group(1), url=cleaned_url)

    raise MeetingUrlError("Invalid meeting URL. Provide a Zoom or Google Meet URL.")


def find_meeting_links(text: str) -> list[MeetingLink]:
    links: list[MeetingLink] = []
    seen: set[tuple[MeetingPlatform, str]] = set()
    for platform, pattern in _PLATFORM_PATTERNS:
        for match in pattern.finditer(text or ""):
            key = (platform, match.group(1))
            if key in seen:
                continue
            seen.add(key)
            links.append(MeetingLink(platform=platform, external_id=match.group(1), url=match.group(0)))
    return links
