import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

from dealflow.config import ScannerSettings
from dealflow.services import calendar, reminders
from dealflow.services.scanner import ReminderScheduler, run_sweep
from dealflow.services.utils import FixedClock
from dealflow.store.memory import MemoryStore
from dealflow.store.sqlite import SqliteStore

ORG = "org-1"
USER = "user-1"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
SCHEMA_PATH = Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"


class BrokenReminderStore(MemoryStore):
    def list_due_reminders(self, now, limit):
        raise RuntimeError("reminders table unavailable")


class BrokenEventStore(MemoryStore):
    def mark_missed_events(self, cutoff, at):
        raise RuntimeError("calendar table unavailable")


class BlockingStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_due_reminders(self, now, limit):
        self.entered.set()
        self.release.wait(5)
        return super().list_due_reminders(now, limit)


def _seed(store, clock: FixedClock) -> None:
    reminders.schedule_task_reminder(store, ORG, USER, "t1", NOW, clock, reminder_offset=0)
    calendar.add_event(
        store,
        ORG,
        USER,
        "Walkthrough",
        NOW - timedelta(hours=4),
        clock,
        reminder_offset=None,
    )


def _clock() -> FixedClock:
    return FixedClock(NOW)


def test_sweep_runs_both_phases() -> None:
    store = MemoryStore()
    clock = _clock()
    _seed(store, clock)

    result = run_sweep(store, clock, ScannerSettings())

    assert result.reminders == 1
    assert result.missed_events == 1
    assert result.ok


def test_sweep_uses_configured_grace() -> None:
    store = MemoryStore()
    clock = _clock()
    reminders.schedule_task_reminder(
        store, ORG, USER, "t1", NOW - timedelta(minutes=10), clock, reminder_offset=0
    )
    run_sweep(store, clock, ScannerSettings(reminder_grace_minutes=5))
    assert [r.status for r in store.list_reminders(ORG)] == ["missed"]


def test_reminder_failure_does_not_stop_event_phase() -> None:
    store = BrokenReminderStore()
    clock = _clock()
    _seed(store, clock)

    result = run_sweep(store, clock, ScannerSettings())

    assert result.reminders == 0
    assert result.missed_events == 1
    assert not result.ok
    assert "reminders table unavailable" in result.errors[0]


def test_event_failure_does_not_stop_reminder_phase() -> None:
    store = BrokenEventStore()
    clock = _clock()
    _seed(store, clock)

    result = run_sweep(store, clock, ScannerSettings())

    assert result.reminders == 1
    assert result.missed_events == 0
    assert result.errors == ["missed_events: calendar table unavailable"]


def test_tick_is_single_flight() -> None:
    store = BlockingStore()
    scheduler = ReminderScheduler(store, _clock(), ScannerSettings())
    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.tick()))
    worker.start()
    assert store.entered.wait(5)

    assert scheduler.tick() is None

    store.release.set()
    worker.join(5)
    assert results and results[0] is not None
    assert scheduler.tick() is not None


def test_scheduler_start_and_stop() -> None:
    store = MemoryStore()
    clock = _clock()
    _seed(store, clock)
    scheduler = ReminderScheduler(store, clock, ScannerSettings(interval_seconds=3600))

    scheduler.start()
    try:
        assert scheduler.running
        assert scheduler.last_result is not None
        assert scheduler.last_result.reminders == 1
        first = scheduler.last_result
        scheduler.start()
        assert scheduler.last_result is first
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.running


def test_scheduler_sweeps_sqlite_store_from_its_thread(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "scan.sqlite")
    store.apply_schema(SCHEMA_PATH)
    clock = _clock()
    _seed(store, clock)
    scheduler = ReminderScheduler(store, clock, ScannerSettings(interval_seconds=0.01))

    scheduler.start()
    try:
        assert scheduler.last_result.reminders == 1
        assert scheduler.last_result.missed_events == 1
        ticked = scheduler.last_result
        deadline = time.monotonic() + 5
        while scheduler.last_result is ticked and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop(timeout=5)

    second = scheduler.last_result
    assert second is not ticked
    assert second.ok
    assert second.reminders == 0
    assert [r.status for r in store.list_reminders(ORG)] == ["sent"]
    assert [e.status for e in store.list_calendar_events(ORG)] == ["missed"]
