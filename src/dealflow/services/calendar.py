from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from dealflow.domain import rules
from dealflow.domain.errors import NotFoundError
from dealflow.domain.models import CalendarEvent
from dealflow.domain.stages import CalendarEventStatus, ReminderTarget
from dealflow.services import reminders
from dealflow.services.events import EventLogger
from dealflow.services.utils import Clock, ensure_utc
from dealflow.store.base import DealflowStore

logger = logging.getLogger(__name__)

DEFAULT_DURATION = timedelta(minutes=60)


def add_event(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    title: str,
    start_at: datetime,
    clock: Clock,
    *,
    end_at: datetime | None = None,
    reminder_offset: int | None = reminders.DEFAULT_OFFSET_MINUTES,
    timezone: str | None = None,
) -> CalendarEvent:
    """Create a scheduled event and arm its reminder.

    ``reminder_offset=None`` creates the event without a reminder.
    """
    rules.require(user_id, "user_id")
    rules.require(title, "title")
    start_at = ensure_utc(start_at)
    end_at = ensure_utc(end_at) if end_at is not None else start_at + DEFAULT_DURATION
    if end_at < start_at:
        raise rules.ValidationError("end_at must not be before start_at.")

    now = clock.now()
    event = CalendarEvent(
        event_id=str(uuid4()),
        org_id=org_id,
        user_id=user_id,
        title=title.strip(),
        start_at=start_at,
        end_at=end_at,
        status=CalendarEventStatus.SCHEDULED.value,
        created_at=now,
        updated_at=now,
    )
    store.insert_calendar_event(event)
    if reminder_offset is not None:
        reminders.schedule_event_reminder(
            store, org_id, user_id, event.event_id, start_at, clock, reminder_offset, timezone
        )
    return event


def get_event(store: DealflowStore, org_id: str, event_id: str) -> CalendarEvent:
    event = store.get_calendar_event(org_id, event_id)
    if event is None:
        raise NotFoundError("Calendar event not found.")
    return event


def reschedule_event(
    store: DealflowStore,
    org_id: str,
    event_id: str,
    start_at: datetime,
    clock: Clock,
    *,
    end_at: datetime | None = None,
    reminder_offset: int = reminders.DEFAULT_OFFSET_MINUTES,
    timezone: str | None = None,
) -> CalendarEvent:
    """Move an event, put it back to ``scheduled`` and re-arm its reminder."""
    current = get_event(store, org_id, event_id)
    start_at = ensure_utc(start_at)
    if end_at is None:
        duration = (current.end_at - current.start_at) if current.end_at else DEFAULT_DURATION
        end_at = start_at + duration
    else:
        end_at = ensure_utc(end_at)
    if end_at < start_at:
        raise rules.ValidationError("end_at must not be before start_at.")

    updated = store.update_calendar_event(
        org_id,
        event_id,
        {
            "start_at": start_at,
            "end_at": end_at,
            "status": CalendarEventStatus.SCHEDULED.value,
            "missed_at": None,
            "updated_at": clock.now(),
        },
    )
    if updated is None:
        raise NotFoundError("Calendar event not found.")
    reminders.schedule_event_reminder(
        store, org_id, updated.user_id, event_id, start_at, clock, reminder_offset, timezone
    )
    return updated


def complete_event(store: DealflowStore, org_id: str, event_id: str, clock: Clock) -> CalendarEvent:
    get_event(store, org_id, event_id)
    now = clock.now()
    updated = store.update_calendar_event(
        org_id,
        event_id,
        {"status": CalendarEventStatus.COMPLETED.value, "completed_at": now, "updated_at": now},
    )
    if updated is None:
        raise NotFoundError("Calendar event not found.")
    return updated


def cancel_event(store: DealflowStore, org_id: str, event_id: str, clock: Clock) -> CalendarEvent:
    current = get_event(store, org_id, event_id)
    now = clock.now()
    updated = store.update_calendar_event(
        org_id,
        event_id,
        {"status": CalendarEventStatus.CANCELLED.value, "cancelled_at": now, "updated_at": now},
    )
    if updated is None:
        raise NotFoundError("Calendar event not found.")
    cancelled = store.cancel_reminders_for_target(
        org_id, current.user_id, ReminderTarget.CALENDAR_EVENT.value, event_id, now
    )
    logger.debug("cancelled %d reminder(s) for event %s", cancelled, event_id)
    return updated


def list_events(store: DealflowStore, org_id: str) -> list[CalendarEvent]:
    return store.list_calendar_events(org_id)


def scan_missed_events(
    store: DealflowStore,
    now: datetime,
    grace: timedelta,
    events: EventLogger | None = None,
) -> int:
    """Mark scheduled events whose end passed more than ``grace`` ago as missed."""
    now = ensure_utc(now)
    count = store.mark_missed_events(now - grace, now)
    if count and events:
        events.log(
            event_type="events_missed",
            entity_type="calendar_event",
            entity_id="*",
            changed_fields=["status", "missed_at"],
            details={"count": count},
        )
    return count
