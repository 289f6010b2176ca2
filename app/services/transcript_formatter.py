from __future__ import annotations

import re
from dataclasses import dataclass, field

_CUE_INDEX_PATTERN = re.compile(r"^\d+$")
_CUE_TIMESTAMP_PATTERN = re.compile(r"^\d{2}:\d{2}")
_SPEAKER_PATTERN = re.compile(r"^(.+?):\s*(.+)$")


@dataclass
class FormattedTranscript:
    text: str
    word_count: int
    speaker_segments: list[dict[str, str | None]] = field(default_factory=list)


@dataclass
class _SpeakerBlock:
    speaker: str | None
    lines: list[str] = field(default_factory=list)

    def render(self) -> str:
        body = " ".join(self.lines)
        if self.speaker:
            return f"[{self.speaker}]: {body}"
        return body


def format_caption_transcript(raw_captions: str) -> FormattedTranscript:
    """Turn a WebVTT caption track into speaker-tagged paragraphs.

    A paragraph is opened with ``[Speaker]: ...`` only when the speaker
    changes; repeated lines from the active speaker and lines without a
    speaker prefix extend the running paragraph.
    """
    blocks: list[_SpeakerBlock] = []
    current_speaker: str | None = None

    for raw_line in (raw_captions or "").splitlines():
        line = raw_line.strip()
        if _is_cue_metadata(line):
            continue

        speaker_match = _SPEAKER_PATTERN.match(line)
        if speaker_match:
            speaker = speaker_match.group(1).strip()
            utterance = speaker_match.group(2).strip()
            if speaker != current_speaker:
                current_speaker = speaker
                blocks.append(_SpeakerBlock(speaker=speaker, lines=[utterance]))
                continue
            line = utterance

        if not blocks:
            blocks.append(_SpeakerBlock(speaker=None))
        blocks[-1].lines.append(line)

    text = "\n\n".join(block.render() for block in blocks).strip()
    return FormattedTranscript(
        text=text,
        word_count=count_words(text),
        speaker_segments=[
            {"speaker": block.speaker, "text": " ".join(block.lines)} for block in blocks
        ],
    )


def count_words(text: str) -> int:
    return len(text.split())


def _is_cue_metadata(line: str) -> bool:
    if not line:
        return True
    if line.startswith("WEBVTT"):
        return True
    if _CUE_INDEX_PATTERN.match(line):
        return True
    return bool(_CUE_TIMESTAMP_PATTERN.match(line))
