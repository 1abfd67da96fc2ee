from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dealflow.domain.errors import NotFoundError
from dealflow.domain.rules import ValidationError
from dealflow.services import calendar
from dealflow.services.utils import FixedClock
from dealflow.store.memory import MemoryStore
from dealflow.store.sqlite import SqliteStore

ORG = "org-1"
USER = "user-1"
START = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def _store(tmp_path: Path, backend: str):
    if backend == "memory":
        return MemoryStore()
    store = SqliteStore(tmp_path / "test.sqlite")
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    return _store(tmp_path, request.param)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


def test_add_event_defaults_and_reminder(store, clock) -> None:
    event = calendar.add_event(store, ORG, USER, "Seller walkthrough", START, clock)
    assert event.status == "scheduled"
    assert event.end_at == START + timedelta(minutes=60)

    [reminder] = store.list_reminders(ORG)
    assert reminder.target_id == event.event_id
    assert reminder.remind_at == START - timedelta(minutes=60)


def test_add_event_without_reminder(store, clock) -> None:
    calendar.add_event(store, ORG, USER, "Call", START, clock, reminder_offset=None)
    assert store.list_reminders(ORG) == []


def test_add_event_rejects_end_before_start(store, clock) -> None:
    with pytest.raises(ValidationError):
        calendar.add_event(
            store, ORG, USER, "Call", START, clock, end_at=START - timedelta(minutes=1)
        )


def test_reschedule_resets_missed_event_and_rearms(store, clock) -> None:
    event = calendar.add_event(
        store, ORG, USER, "Call", START, clock, end_at=START + timedelta(minutes=30)
    )
    later = START + timedelta(hours=3)
    assert calendar.scan_missed_events(store, later, timedelta(minutes=60)) == 1
    assert calendar.get_event(store, ORG, event.event_id).status == "missed"

    moved = START + timedelta(days=2)
    updated = calendar.reschedule_event(store, ORG, event.event_id, moved, clock)
    assert updated.status == "scheduled"
    assert updated.missed_at is None
    assert updated.end_at == moved + timedelta(minutes=30)

    [reminder] = store.list_reminders(ORG)
    assert reminder.remind_at == moved - timedelta(minutes=60)
    assert reminder.status == "pending"


def test_missed_scan_cutoff(store, clock) -> None:
    ended = calendar.add_event(store, ORG, USER, "Old", START, clock)
    recent = calendar.add_event(store, ORG, USER, "Recent", START + timedelta(hours=1), clock)
    done = calendar.add_event(store, ORG, USER, "Done", START, clock)
    calendar.complete_event(store, ORG, done.event_id, clock)

    now = ended.end_at + timedelta(minutes=61)
    assert calendar.scan_missed_events(store, now, timedelta(minutes=60)) == 1

    by_id = {e.event_id: e for e in calendar.list_events(store, ORG)}
    assert by_id[ended.event_id].status == "missed"
    assert by_id[ended.event_id].missed_at == now
    assert by_id[recent.event_id].status == "scheduled"
    assert by_id[done.event_id].status == "completed"


def test_cancel_event_cancels_reminders(store, clock) -> None:
    event = calendar.add_event(store, ORG, USER, "Call", START, clock)
    cancelled = calendar.cancel_event(store, ORG, event.event_id, clock)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at == clock.now()
    assert [r.status for r in store.list_reminders(ORG)] == ["cancelled"]


def test_event_lookup_is_org_scoped(store, clock) -> None:
    event = calendar.add_event(store, ORG, USER, "Call", START, clock)
    with pytest.raises(NotFoundError):
        calendar.complete_event(store, "org-2", event.event_id, clock)
