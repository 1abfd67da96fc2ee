"""Reminder scheduling, delivery acknowledgement and the due-reminder scan.

Reminders move ``pending -> sent | missed -> delivered``. Scheduling the same
logical reminder again (same key) re-arms it instead of adding a row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from dealflow.domain import rules
from dealflow.domain.errors import ConflictError, NotFoundError
from dealflow.domain.models import Reminder
from dealflow.domain.stages import (
    SCANNABLE_REMINDER_STATUSES,
    ReminderChannel,
    ReminderStatus,
    ReminderTarget,
)
from dealflow.services.events import EventLogger
from dealflow.services.utils import Clock, ensure_utc
from dealflow.store.base import DealflowStore

logger = logging.getLogger(__name__)

DEFAULT_OFFSET_MINUTES = -60
DEFAULT_LIST_LIMIT = 50


def build_idempotency_key(
    org_id: str,
    user_id: str,
    target_type: str,
    target_id: str,
    reminder_offset: int,
    channel: str,
) -> str:
    return f"{org_id}:{user_id}:{target_type}:{target_id}:{reminder_offset}:{channel}"


def create_reminder(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    target_type: str,
    target_id: str,
    remind_at: datetime,
    clock: Clock,
    *,
    reminder_offset: int = DEFAULT_OFFSET_MINUTES,
    channel: str = ReminderChannel.IN_APP.value,
    timezone: str | None = None,
) -> Reminder:
    """Create a pending reminder; it must fire in the future and be new."""
    reminder = _build(
        org_id,
        user_id,
        target_type,
        target_id,
        remind_at,
        clock,
        reminder_offset=reminder_offset,
        channel=channel,
        timezone=timezone,
    )
    if reminder.remind_at <= clock.now():
        raise rules.ValidationError("remind_at must be in the future.")
    if not store.insert_reminder(reminder):
        raise ConflictError(f"Reminder already exists: {reminder.idempotency_key}")
    return reminder


def schedule_event_reminder(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    event_id: str,
    start_at: datetime,
    clock: Clock,
    reminder_offset: int = DEFAULT_OFFSET_MINUTES,
    timezone: str | None = None,
) -> Reminder:
    return _schedule(
        store,
        org_id,
        user_id,
        ReminderTarget.CALENDAR_EVENT.value,
        event_id,
        start_at,
        clock,
        reminder_offset,
        timezone,
    )


def schedule_task_reminder(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    task_id: str,
    due_at: datetime,
    clock: Clock,
    reminder_offset: int = DEFAULT_OFFSET_MINUTES,
    timezone: str | None = None,
) -> Reminder:
    return _schedule(
        store,
        org_id,
        user_id,
        ReminderTarget.TASK.value,
        task_id,
        due_at,
        clock,
        reminder_offset,
        timezone,
    )


def due_reminders_for_user(
    store: DealflowStore, org_id: str, user_id: str, limit: int = DEFAULT_LIST_LIMIT
) -> list[Reminder]:
    return store.list_user_reminders(org_id, user_id, ReminderStatus.SENT.value, limit)


def missed_reminders_for_user(
    store: DealflowStore, org_id: str, user_id: str, limit: int = DEFAULT_LIST_LIMIT
) -> list[Reminder]:
    return store.list_user_reminders(org_id, user_id, ReminderStatus.MISSED.value, limit)


def mark_delivered(
    store: DealflowStore, org_id: str, user_id: str, reminder_id: str, clock: Clock
) -> Reminder:
    existing = store.get_reminder(org_id, user_id, reminder_id)
    if existing is None:
        raise NotFoundError("Reminder not found.")
    if existing.status == ReminderStatus.DELIVERED.value and existing.delivered_at is not None:
        return existing
    updated = store.transition_reminder(reminder_id, ReminderStatus.DELIVERED.value, clock.now())
    if updated is None:
        raise NotFoundError("Reminder not found.")
    return updated


def cancel_reminders_for_target(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    target_type: str,
    target_id: str,
    clock: Clock,
) -> int:
    rules.validate_enum(target_type, [t.value for t in ReminderTarget], "target_type")
    return store.cancel_reminders_for_target(org_id, user_id, target_type, target_id, clock.now())


def scan_due_reminders(
    store: DealflowStore,
    now: datetime,
    grace: timedelta,
    limit: int = 100,
    events: EventLogger | None = None,
) -> int:
    """Mark due pending reminders ``sent`` (within grace) or ``missed``.

    A reminder already moved on by a concurrent scan is skipped.
    """
    now = ensure_utc(now)
    transitioned = 0
    for reminder in store.list_due_reminders(now, limit):
        delay = now - reminder.remind_at
        status = ReminderStatus.SENT if delay <= grace else ReminderStatus.MISSED
        updated = store.transition_reminder(
            reminder.reminder_id,
            status.value,
            now,
            from_statuses=SCANNABLE_REMINDER_STATUSES,
        )
        if updated is None:
            continue
        transitioned += 1
        if events:
            events.log(
                event_type=f"reminder_{status.value}",
                entity_type="reminder",
                entity_id=reminder.reminder_id,
                org_id=reminder.org_id,
                changed_fields=["status", "sent_at"],
                details={"delay_seconds": int(delay.total_seconds())},
            )
    return transitioned


def _schedule(
    store: DealflowStore,
    org_id: str,
    user_id: str,
    target_type: str,
    target_id: str,
    anchor: datetime,
    clock: Clock,
    reminder_offset: int,
    timezone: str | None,
) -> Reminder:
    remind_at = ensure_utc(anchor) + timedelta(minutes=reminder_offset)
    reminder = _build(
        org_id,
        user_id,
        target_type,
        target_id,
        remind_at,
        clock,
        reminder_offset=reminder_offset,
        channel=ReminderChannel.IN_APP.value,
        timezone=timezone,
    )
    stored = store.upsert_reminder(reminder)
    logger.debug("scheduled reminder %s at %s", stored.idempotency_key, stored.remind_at)
    return stored


def _build(
    org_id: str,
    user_id: str,
    target_type: str,
    target_id: str,
    remind_at: datetime,
    clock: Clock,
    *,
    reminder_offset: int,
    channel: str,
    timezone: str | None,
) -> Reminder:
    rules.require(org_id, "org_id")
    rules.require(user_id, "user_id")
    rules.require(target_id, "target_id")
    rules.validate_enum(target_type, [t.value for t in ReminderTarget], "target_type")
    rules.validate_enum(channel, [c.value for c in ReminderChannel], "channel")
    now = clock.now()
    return Reminder(
        reminder_id=str(uuid4()),
        org_id=org_id,
        user_id=user_id,
        target_type=target_type,
        target_id=target_id,
        remind_at=ensure_utc(remind_at),
        reminder_offset=reminder_offset,
        channel=channel,
        status=ReminderStatus.PENDING.value,
        idempotency_key=build_idempotency_key(
            org_id, user_id, target_type, target_id, reminder_offset, channel
        ),
        created_at=now,
        updated_at=now,
        timezone=timezone or None,
    )
