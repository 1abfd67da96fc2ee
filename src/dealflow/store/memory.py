from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from dealflow.domain.models import CalendarEvent, Deal, Lead, Reminder, StageChange
from dealflow.domain.stages import (
    ACTIVE_REMINDER_STATUSES,
    CalendarEventStatus,
    ReminderStatus,
)
from dealflow.store.base import (
    CALENDAR_EVENT_UPDATABLE_FIELDS,
    FIRST_ENTER_COLUMNS,
    LEAD_UPDATABLE_FIELDS,
    check_changes,
)


class MemoryStore:
    """Process-local store with the same semantics as ``SqliteStore``.

    State belongs to the instance; build one per process or per test.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._leads: dict[str, Lead] = {}
        self._deals: dict[str, Deal] = {}
        self._reminders: dict[str, Reminder] = {}
        self._events: dict[str, CalendarEvent] = {}

    # leads

    def get_lead(self, org_id: str, lead_id: str) -> Lead | None:
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None or lead.org_id != org_id:
                return None
            return lead

    def insert_lead(self, lead: Lead) -> bool:
        with self._lock:
            if self._lead_by_hash(lead.org_id, lead.address_hash) is not None:
                return False
            self._leads[lead.lead_id] = lead
            return True

    def upsert_lead_by_address(self, lead: Lead) -> tuple[Lead, bool]:
        with self._lock:
            existing = self._lead_by_hash(lead.org_id, lead.address_hash)
            if existing is None:
                self._leads[lead.lead_id] = lead
                return lead, True
            land_signals = existing.land_signals
            if lead.land_signals is not None:
                land_signals = lead.land_signals
            updated = replace(
                existing,
                lead_type=lead.lead_type,
                land_signals=land_signals,
                updated_at=lead.updated_at,
            )
            self._leads[existing.lead_id] = updated
            return updated, False

    def update_lead(self, org_id: str, lead_id: str, changes: dict[str, Any]) -> Lead | None:
        check_changes(changes, LEAD_UPDATABLE_FIELDS)
        with self._lock:
            lead = self.get_lead(org_id, lead_id)
            if lead is None:
                return None
            updated = replace(lead, **changes)
            self._leads[lead_id] = updated
            return updated

    def list_leads(
        self, org_id: str, status: str | None = None, include_archived: bool = False
    ) -> list[Lead]:
        with self._lock:
            leads = [
                lead
                for lead in self._leads.values()
                if lead.org_id == org_id
                and (status is None or lead.status == status)
                and (include_archived or lead.archived_at is None)
            ]
        return sorted(leads, key=lambda lead: lead.updated_at, reverse=True)

    def _lead_by_hash(self, org_id: str, address_hash: str) -> Lead | None:
        for lead in self._leads.values():
            if lead.org_id == org_id and lead.address_hash == address_hash:
                return lead
        return None

    # deals

    def get_deal(self, org_id: str, deal_id: str) -> Deal | None:
        with self._lock:
            deal = self._deals.get(deal_id)
            if deal is None or deal.org_id != org_id:
                return None
            return deal

    def insert_deal_if_absent(self, deal: Deal) -> Deal:
        with self._lock:
            for existing in self._deals.values():
                if existing.org_id == deal.org_id and existing.lead_id == deal.lead_id:
                    return existing
            self._deals[deal.deal_id] = deal
            return deal

    def apply_stage_change(self, org_id: str, deal_id: str, change: StageChange) -> Deal | None:
        if change.first_enter_field and change.first_enter_field not in FIRST_ENTER_COLUMNS:
            raise ValueError(f"Unknown stage timestamp column: {change.first_enter_field}")
        with self._lock:
            deal = self.get_deal(org_id, deal_id)
            if deal is None:
                return None
            updates: dict[str, Any] = {
                "stage": change.stage,
                "stage_updated_at": change.at,
                "updated_at": change.at,
            }
            column = change.first_enter_field
            if column and getattr(deal, column) is None:
                updates[column] = change.at
            if change.set_fee_expected:
                updates["assignment_fee_expected"] = change.fee_expected
            if change.set_fee_actual:
                updates["assignment_fee_actual"] = change.fee_actual
            updated = replace(deal, **updates)
            self._deals[deal_id] = updated
            return updated

    def list_deals(self, org_id: str, stage: str | None = None) -> list[Deal]:
        with self._lock:
            deals = [
                deal
                for deal in self._deals.values()
                if deal.org_id == org_id and (stage is None or deal.stage == stage)
            ]
        return sorted(deals, key=lambda deal: deal.created_at, reverse=True)

    # reminders

    def insert_reminder(self, reminder: Reminder) -> bool:
        with self._lock:
            if self._reminder_by_key(reminder.idempotency_key) is not None:
                return False
            self._reminders[reminder.reminder_id] = reminder
            return True

    def upsert_reminder(self, reminder: Reminder) -> Reminder:
        with self._lock:
            existing = self._reminder_by_key(reminder.idempotency_key)
            if existing is None:
                self._reminders[reminder.reminder_id] = reminder
                return reminder
            updated = replace(
                existing,
                remind_at=reminder.remind_at,
                reminder_offset=reminder.reminder_offset,
                timezone=reminder.timezone,
                status=ReminderStatus.PENDING.value,
                sent_at=None,
                delivered_at=None,
                updated_at=reminder.updated_at,
            )
            self._reminders[existing.reminder_id] = updated
            return updated

    def get_reminder(self, org_id: str, user_id: str, reminder_id: str) -> Reminder | None:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or reminder.org_id != org_id or reminder.user_id != user_id:
                return None
            return reminder

    def list_due_reminders(self, now: datetime, limit: int) -> list[Reminder]:
        with self._lock:
            due = [
                reminder
                for reminder in self._reminders.values()
                if reminder.status == ReminderStatus.PENDING.value and reminder.remind_at <= now
            ]
        due.sort(key=lambda reminder: reminder.remind_at)
        return due[:limit]

    def list_user_reminders(
        self, org_id: str, user_id: str, status: str, limit: int
    ) -> list[Reminder]:
        with self._lock:
            matches = [
                reminder
                for reminder in self._reminders.values()
                if reminder.org_id == org_id
                and reminder.user_id == user_id
                and reminder.status == status
                and reminder.delivered_at is None
            ]
        matches.sort(key=lambda reminder: reminder.remind_at)
        return matches[:limit]

    def list_reminders(self, org_id: str) -> list[Reminder]:
        with self._lock:
            matches = [r for r in self._reminders.values() if r.org_id == org_id]
        return sorted(matches, key=lambda reminder: reminder.remind_at)

    def transition_reminder(
        self,
        reminder_id: str,
        status: str,
        at: datetime,
        from_statuses: Iterable[str] | None = None,
    ) -> Reminder | None:
        allowed = None if from_statuses is None else set(from_statuses)
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None:
                return None
            if allowed is not None and reminder.status not in allowed:
                return None
            updates: dict[str, Any] = {"status": status, "updated_at": at}
            if status in (ReminderStatus.SENT.value, ReminderStatus.MISSED.value):
                updates["sent_at"] = at
            elif status == ReminderStatus.DELIVERED.value:
                updates["delivered_at"] = at
            updated = replace(reminder, **updates)
            self._reminders[reminder_id] = updated
            return updated

    def cancel_reminders_for_target(
        self, org_id: str, user_id: str, target_type: str, target_id: str, at: datetime
    ) -> int:
        count = 0
        with self._lock:
            for reminder in list(self._reminders.values()):
                if (
                    reminder.org_id == org_id
                    and reminder.user_id == user_id
                    and reminder.target_type == target_type
                    and reminder.target_id == target_id
                    and reminder.status in ACTIVE_REMINDER_STATUSES
                ):
                    self._reminders[reminder.reminder_id] = replace(
                        reminder, status=ReminderStatus.CANCELLED.value, updated_at=at
                    )
                    count += 1
        return count

    def _reminder_by_key(self, idempotency_key: str) -> Reminder | None:
        for reminder in self._reminders.values():
            if reminder.idempotency_key == idempotency_key:
                return reminder
        return None

    # calendar events

    def insert_calendar_event(self, event: CalendarEvent) -> None:
        with self._lock:
            if event.event_id in self._events:
                raise ValueError(f"Duplicate calendar event id: {event.event_id}")
            self._events[event.event_id] = event

    def get_calendar_event(self, org_id: str, event_id: str) -> CalendarEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.org_id != org_id:
                return None
            return event

    def update_calendar_event(
        self, org_id: str, event_id: str, changes: dict[str, Any]
    ) -> CalendarEvent | None:
        check_changes(changes, CALENDAR_EVENT_UPDATABLE_FIELDS)
        with self._lock:
            event = self.get_calendar_event(org_id, event_id)
            if event is None:
                return None
            updated = replace(event, **changes)
            self._events[event_id] = updated
            return updated

    def mark_missed_events(self, cutoff: datetime, at: datetime) -> int:
        count = 0
        with self._lock:
            for event in list(self._events.values()):
                if (
                    event.status == CalendarEventStatus.SCHEDULED.value
                    and event.end_at is not None
                    and event.end_at < cutoff
                ):
                    self._events[event.event_id] = replace(
                        event,
                        status=CalendarEventStatus.MISSED.value,
                        missed_at=at,
                        updated_at=at,
                    )
                    count += 1
        return count

    def list_calendar_events(self, org_id: str) -> list[CalendarEvent]:
        with self._lock:
            matches = [e for e in self._events.values() if e.org_id == org_id]
        return sorted(matches, key=lambda event: event.start_at)
