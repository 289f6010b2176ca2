import pytest

from app.schemas.meeting import MeetingStatus
from app.services.meeting_state_machine import (
    MeetingStateMachine,
    MeetingTrigger,
    TransitionOutcome,
    is_terminal,
)
from app.services.meeting_store import InMemoryMeetingStore, build_meeting_document


@pytest.fixture
def store() -> InMemoryMeetingStore:
    return InMemoryMeetingStore()


def _create_meeting(store: InMemoryMeetingStore, status: MeetingStatus, external_id: str = "123") -> str:
    record = store.create(
        build_meeting_document(
            user_id="user-1",
            platform="zoom",
            status=status.value,
            external_id=external_id,
        ),
    )
    return record["_id"]


def test_full_lifecycle_applies_in_order(store: InMemoryMeetingStore) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.scheduled)

    for trigger, expected_status in [
        (MeetingTrigger.bot_launched, MeetingStatus.bot_joining),
        (MeetingTrigger.meeting_started, MeetingStatus.in_progress),
        (MeetingTrigger.completion_pending, MeetingStatus.processing),
        (MeetingTrigger.transcript_delivered, MeetingStatus.completed),
    ]:
        result = machine.apply(meeting_id, trigger)
        assert result.applied
        assert result.current_status == expected_status

    assert store.get_by_id(meeting_id)["status"] == "completed"


def test_replayed_trigger_is_unchanged(store: InMemoryMeetingStore) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.bot_joining)

    first = machine.apply(meeting_id, MeetingTrigger.meeting_started, {"started_at": "first"})
    second = machine.apply(meeting_id, MeetingTrigger.meeting_started, {"started_at": "second"})

    assert first.outcome == TransitionOutcome.applied
    assert second.outcome == TransitionOutcome.unchanged
    assert store.get_by_id(meeting_id)["started_at"] == "first"


@pytest.mark.parametrize("terminal_status", [MeetingStatus.completed, MeetingStatus.failed])
@pytest.mark.parametrize("trigger", list(MeetingTrigger))
def test_terminal_meetings_never_move(
    store: InMemoryMeetingStore,
    terminal_status: MeetingStatus,
    trigger: MeetingTrigger,
) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, terminal_status)

    result = machine.apply(meeting_id, trigger, {"error_detail": "late"})

    assert not result.applied
    record = store.get_by_id(meeting_id)
    assert record["status"] == terminal_status.value
    assert record["error_detail"] is None


def test_out_of_order_trigger_is_ignored(store: InMemoryMeetingStore) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.scheduled)

    result = machine.apply(meeting_id, MeetingTrigger.transcript_delivered)

    assert result.outcome == TransitionOutcome.ignored
    assert store.get_by_id(meeting_id)["status"] == "scheduled"


def test_failure_applies_from_every_active_status(store: InMemoryMeetingStore) -> None:
    machine = MeetingStateMachine(store)
    for index, status in enumerate(
        [MeetingStatus.scheduled, MeetingStatus.bot_joining, MeetingStatus.in_progress, MeetingStatus.processing],
    ):
        meeting_id = _create_meeting(store, status, external_id=str(index))
        result = machine.apply(meeting_id, MeetingTrigger.failure_reported, {"error_detail": "boom"})
        assert result.applied
        assert store.get_by_id(meeting_id)["error_detail"] == "boom"


def test_unknown_meeting_reports_not_found(store: InMemoryMeetingStore) -> None:
    result = MeetingStateMachine(store).apply("missing", MeetingTrigger.meeting_started)

    assert result.outcome == TransitionOutcome.not_found
    assert result.current_status is None


def test_lost_race_reports_winner_state(store: InMemoryMeetingStore, monkeypatch: pytest.MonkeyPatch) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.in_progress)
    original_compare_and_set = store.compare_and_set_status

    def racing_compare_and_set(*args, **kwargs):  # type: ignore[no-untyped-def]
        store.update(meeting_id, {"status": MeetingStatus.failed.value})
        return original_compare_and_set(*args, **kwargs)

    monkeypatch.setattr(store, "compare_and_set_status", racing_compare_and_set)

    result = machine.apply(meeting_id, MeetingTrigger.completion_pending)

    assert result.outcome == TransitionOutcome.ignored
    assert result.current_status == MeetingStatus.failed


def test_retry_after_lost_race_keeps_transition_fields(
    store: InMemoryMeetingStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.bot_joining)
    original_compare_and_set = store.compare_and_set_status
    calls: list[int] = []

    def racing_compare_and_set(*args, **kwargs):  # type: ignore[no-untyped-def]
        if not calls:
            store.update(meeting_id, {"status": MeetingStatus.in_progress.value})
        calls.append(1)
        return original_compare_and_set(*args, **kwargs)

    monkeypatch.setattr(store, "compare_and_set_status", racing_compare_and_set)

    result = machine.apply(meeting_id, MeetingTrigger.failure_reported, {"error_detail": "boom"})

    assert result.outcome == TransitionOutcome.applied
    assert len(calls) == 2
    meeting = store.get_by_id(meeting_id)
    assert meeting["status"] == MeetingStatus.failed
    assert meeting["error_detail"] == "boom"


def test_lost_race_retries_are_bounded(store: InMemoryMeetingStore, monkeypatch: pytest.MonkeyPatch) -> None:
    machine = MeetingStateMachine(store)
    meeting_id = _create_meeting(store, MeetingStatus.bot_joining)
    original_compare_and_set = store.compare_and_set_status
    calls: list[int] = []

    def flapping_compare_and_set(*args, **kwargs):  # type: ignore[no-untyped-def]
        current = store.get_by_id(meeting_id)["status"]
        flipped = MeetingStatus.in_progress if current == MeetingStatus.bot_joining else MeetingStatus.bot_joining
        store.update(meeting_id, {"status": flipped.value})
        calls.append(1)
        return original_compare_and_set(*args, **kwargs)

    monkeypatch.setattr(store, "compare_and_set_status", flapping_compare_and_set)

    result = machine.apply(meeting_id, MeetingTrigger.failure_reported, {"error_detail": "boom"})

    assert result.outcome == TransitionOutcome.ignored
    assert len(calls) == 2
    assert store.get_by_id(meeting_id).get("error_detail") is None


def test_is_terminal() -> None:
    assert is_terminal("completed")
    assert is_terminal(MeetingStatus.failed)
    assert not is_terminal("processing")
