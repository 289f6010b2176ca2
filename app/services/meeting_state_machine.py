"""Canonical status lifecycle of a meeting record.

Every transition is a conditional write on the expected prior status, so a
redelivered or racing event either applies once or becomes a no-op.
Unknown meetings and disallowed transitions are reported, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from app.schemas.meeting import MeetingStatus
from app.services.meeting_store import MeetingStore

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({MeetingStatus.completed, MeetingStatus.failed})
ACTIVE_STATUSES = frozenset(
    {
        MeetingStatus.scheduled,
        MeetingStatus.bot_joining,
        MeetingStatus.in_progress,
        MeetingStatus.processing,
    },
)
MAX_TRANSITION_ATTEMPTS = 2


class MeetingTrigger(StrEnum):
    bot_launched = "bot_launched"
    meeting_started = "meeting_started"
    completion_pending = "completion_pending"
    transcript_delivered = "transcript_delivered"
    failure_reported = "failure_reported"


class TransitionOutcome(StrEnum):
    applied = "applied"
    unchanged = "unchanged"
    ignored = "ignored"
    not_found = "not_found"


@dataclass(frozen=True)
class TransitionRule:
    allowed_from: frozenset[MeetingStatus]
    target: MeetingStatus


TRANSITION_RULES: dict[MeetingTrigger, TransitionRule] = {
    MeetingTrigger.bot_launched: TransitionRule(
        allowed_from=frozenset({MeetingStatus.scheduled}),
        target=MeetingStatus.bot_joining,
    ),
    MeetingTrigger.meeting_started: TransitionRule(
        allowed_from=frozenset({MeetingStatus.bot_joining}),
        target=MeetingStatus.in_progress,
    ),
    MeetingTrigger.completion_pending: TransitionRule(
        allowed_from=frozenset({MeetingStatus.bot_joining, MeetingStatus.in_progress}),
        target=MeetingStatus.processing,
    ),
    MeetingTrigger.transcript_delivered: TransitionRule(
        allowed_from=frozenset({MeetingStatus.processing}),
        target=MeetingStatus.completed,
    ),
    MeetingTrigger.failure_reported: TransitionRule(
        allowed_from=ACTIVE_STATUSES,
        target=MeetingStatus.failed,
    ),
}


@dataclass(frozen=True)
class TransitionResult:
    meeting_id: str
    trigger: MeetingTrigger
    outcome: TransitionOutcome
    previous_status: MeetingStatus | None
    current_status: MeetingStatus | None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.applied


class MeetingStateMachine:
    def __init__(self, store: MeetingStore) -> None:
        self.store = store

    def apply(
        self,
        meeting_id: str,
        trigger: MeetingTrigger,
        updates: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        return self._apply(meeting_id, trigger, updates, attempts_left=MAX_TRANSITION_ATTEMPTS)

    def _apply(
        self,
        meeting_id: str,
        trigger: MeetingTrigger,
        updates: Mapping[str, Any] | None,
        attempts_left: int,
    ) -> TransitionResult:
        rule = TRANSITION_RULES[trigger]
        meeting = self.store.get_by_id(meeting_id)
        if meeting is None:
            logger.info("Meeting transition skipped meeting_id=%s trigger=%s reason=not_found", meeting_id, trigger.value)
            return TransitionResult(
                meeting_id=meeting_id,
                trigger=trigger,
                outcome=TransitionOutcome.not_found,
                previous_status=None,
                current_status=None,
            )

        current_status = MeetingStatus(meeting["status"])
        if current_status == rule.target:
            return TransitionResult(
                meeting_id=meeting_id,
                trigger=trigger,
                outcome=TransitionOutcome.unchanged,
                previous_status=current_status,
                current_status=current_status,
            )
        if current_status not in rule.allowed_from:
            logger.info(
                "Meeting transition ignored meeting_id=%s trigger=%s status=%s",
                meeting_id,
                trigger.value,
                current_status.value,
            )
            return TransitionResult(
                meeting_id=meeting_id,
                trigger=trigger,
                outcome=TransitionOutcome.ignored,
                previous_status=current_status,
                current_status=current_status,
            )

        swapped = self.store.compare_and_set_status(
            meeting_id,
            expected_statuses=[current_status.value],
            new_status=rule.target.value,
            updates=updates,
        )
        if not swapped:
            # Lost a race; report whatever the winner left behind.
            return self._resolve_lost_race(
                meeting_id,
                trigger,
                rule,
                current_status,
                updates,
                attempts_left,
            )

        logger.info(
            "Meeting transition applied meeting_id=%s trigger=%s from=%s to=%s",
            meeting_id,
            trigger.value,
            current_status.value,
            rule.target.value,
        )
        return TransitionResult(
            meeting_id=meeting_id,
            trigger=trigger,
            outcome=TransitionOutcome.applied,
            previous_status=current_status,
            current_status=rule.target,
        )

    def _resolve_lost_race(
        self,
        meeting_id: str,
        trigger: MeetingTrigger,
        rule: TransitionRule,
        observed_status: MeetingStatus,
        updates: Mapping[str, Any] | None,
        attempts_left: int,
    ) -> TransitionResult:
        meeting = self.store.get_by_id(meeting_id)
        if meeting is None:
            return TransitionResult(
                meeting_id=meeting_id,
                trigger=trigger,
                outcome=TransitionOutcome.not_found,
                previous_status=observed_status,
                current_status=None,
            )
        latest_status = MeetingStatus(meeting["status"])
        if latest_status == rule.target:
            outcome = TransitionOutcome.unchanged
        elif latest_status in rule.allowed_from and attempts_left > 1:
            # Another writer moved the record between two permitted states.
            return self._apply(meeting_id, trigger, updates, attempts_left - 1)
        elif latest_status in rule.allowed_from:
            logger.warning(
                "Meeting transition gave up meeting_id=%s trigger=%s status=%s",
                meeting_id,
                trigger.value,
                latest_status.value,
            )
            outcome = TransitionOutcome.ignored
        else:
            outcome = TransitionOutcome.ignored
        return TransitionResult(
            meeting_id=meeting_id,
            trigger=trigger,
            outcome=outcome,
            previous_status=observed_status,
            current_status=latest_status,
        )


def is_terminal(status: MeetingStatus | str) -> bool:
    return MeetingStatus(status) in TERMINAL_STATUSES
