import pytest

from app.schemas.meeting import MeetingPlatform
from app.services.meeting_url_parser import MeetingUrlError, classify_meeting_url, find_meeting_links


def test_classifies_zoom_join_link() -> None:
    link = classify_meeting_url("https://us02web.zoom.us/j/81234567890?pwd=abc")

    assert link.platform == MeetingPlatform.zoom
    assert link.external_id == "81234567890"


def test_classifies_google_meet_code() -> None:
    link = classify_meeting_url("  https://meet.google.com/abc-defg-hij  ")

    assert link.platform == MeetingPlatform.google_meet
    assert link.external_id == "abc-defg-hij"
    assert link.url == "https://meet.google.com/abc-defg-hij"


@pytest.mark.parametrize(
    "meeting_url",
    [
        "",
        "https://teams.microsoft.com/l/meetup-join/123",
        "https://meet.google.com/abcdefghij",
        "http://us02web.zoom.us/j/81234567890",
    ],
)
def test_rejects_unsupported_urls(meeting_url: str) -> None:
    with pytest.raises(MeetingUrlError):
        classify_meeting_url(meeting_url)


def test_find_meeting_links_deduplicates_and_keeps_both_platforms() -> None:
    text = (
        "Join https://acme.zoom.us/j/5551234 or https://acme.zoom.us/j/5551234 "
        "backup https://meet.google.com/xyz-abcd-efg"
    )

    links = find_meeting_links(text)

    assert [(link.platform, link.external_id) for link in links] == [
        (MeetingPlatform.zoom, "5551234"),
        (MeetingPlatform.google_meet, "xyz-abcd-efg"),
    ]


def test_find_meeting_links_returns_empty_for_plain_text() -> None:
    assert find_meeting_links("Lunch at noon") == []
