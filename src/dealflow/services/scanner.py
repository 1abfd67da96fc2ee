"""Periodic sweep that fires due reminders and flags missed calendar events."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from dealflow.config import ScannerSettings
from dealflow.services.calendar import scan_missed_events
from dealflow.services.events import EventLogger
from dealflow.services.reminders import scan_due_reminders
from dealflow.services.utils import Clock
from dealflow.store.base import DealflowStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    reminders: int = 0
    missed_events: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def run_sweep(
    store: DealflowStore,
    clock: Clock,
    settings: ScannerSettings,
    events: EventLogger | None = None,
) -> SweepResult:
    """Run both phases once. Never raises; failures land in ``errors``."""
    now = clock.now()
    result = SweepResult()

    try:
        result.reminders = scan_due_reminders(
            store, now, settings.reminder_grace, settings.batch_limit, events=events
        )
    except Exception as exc:
        logger.exception("reminder scan failed")
        result.errors.append(f"reminders: {exc}")

    try:
        result.missed_events = scan_missed_events(store, now, settings.event_grace, events=events)
    except Exception as exc:
        logger.exception("missed-event scan failed")
        result.errors.append(f"missed_events: {exc}")

    if result.reminders or result.missed_events:
        logger.info("sweep reminders=%d missed_events=%d", result.reminders, result.missed_events)
    return result


class ReminderScheduler:
    """Runs ``run_sweep`` now and then every ``interval_seconds``.

    Sweeps never overlap: a tick that arrives while one is running is skipped.
    """

    def __init__(
        self,
        store: DealflowStore,
        clock: Clock,
        settings: ScannerSettings,
        events: EventLogger | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.settings = settings
        self.events = events
        self.last_result: SweepResult | None = None
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.debug("scheduler already running")
            return
        logger.info("starting scheduler interval=%ss", self.settings.interval_seconds)
        self._stop.clear()
        self.tick()
        self._thread = threading.Thread(target=self._loop, name="dealflow-scanner", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling further sweeps; a sweep in progress runs to completion."""
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("scheduler stopped")

    def tick(self) -> SweepResult | None:
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("sweep still in flight, skipping tick")
            return None
        try:
            result = run_sweep(self.store, self.clock, self.settings, events=self.events)
            self.last_result = result
            return result
        finally:
            self._sweep_lock.release()

    def _loop(self) -> None:
        while not self._stop.wait(self.settings.interval_seconds):
            self.tick()
