from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from dealflow.domain.models import CalendarEvent, Deal, Lead, Reminder, StageChange


class DealflowStore(Protocol):
    """Persistence operations the services are written against.

    Every mutating call is a single atomic write. Implementations raise
    ``StorageFailure`` for I/O errors and never partially apply a change.
    """

    # leads
    def get_lead(self, org_id: str, lead_id: str) -> Lead | None: ...

    def insert_lead(self, lead: Lead) -> bool: ...

    def upsert_lead_by_address(self, lead: Lead) -> tuple[Lead, bool]: ...

    def update_lead(self, org_id: str, lead_id: str, changes: dict[str, Any]) -> Lead | None: ...

    def list_leads(
        self, org_id: str, status: str | None = None, include_archived: bool = False
    ) -> list[Lead]: ...

    # deals
    def get_deal(self, org_id: str, deal_id: str) -> Deal | None: ...

    def insert_deal_if_absent(self, deal: Deal) -> Deal: ...

    def apply_stage_change(self, org_id: str, deal_id: str, change: StageChange) -> Deal | None: ...

    def list_deals(self, org_id: str, stage: str | None = None) -> list[Deal]: ...

    # reminders
    def insert_reminder(self, reminder: Reminder) -> bool: ...

    def upsert_reminder(self, reminder: Reminder) -> Reminder: ...

    def get_reminder(self, org_id: str, user_id: str, reminder_id: str) -> Reminder | None: ...

    def list_due_reminders(self, now: datetime, limit: int) -> list[Reminder]: ...

    def list_user_reminders(
        self, org_id: str, user_id: str, status: str, limit: int
    ) -> list[Reminder]: ...

    def list_reminders(self, org_id: str) -> list[Reminder]: ...

    def transition_reminder(
        self,
        reminder_id: str,
        status: str,
        at: datetime,
        from_statuses: Iterable[str] | None = None,
    ) -> Reminder | None: ...

    def cancel_reminders_for_target(
        self, org_id: str, user_id: str, target_type: str, target_id: str, at: datetime
    ) -> int: ...

    # calendar events
    def insert_calendar_event(self, event: CalendarEvent) -> None: ...

    def get_calendar_event(self, org_id: str, event_id: str) -> CalendarEvent | None: ...

    def update_calendar_event(
        self, org_id: str, event_id: str, changes: dict[str, Any]
    ) -> CalendarEvent | None: ...

    def mark_missed_events(self, cutoff: datetime, at: datetime) -> int: ...

    def list_calendar_events(self, org_id: str) -> list[CalendarEvent]: ...


# Columns a caller may patch through ``update_lead`` / ``update_calendar_event``.
LEAD_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "is_qualified",
        "arv",
        "estimated_repairs",
        "investor_multiplier",
        "desired_assignment_fee",
        "offer_price",
        "moa",
        "deal_score",
        "lead_type",
        "land_signals",
        "seller_name",
        "archived_at",
        "updated_at",
    }
)

CALENDAR_EVENT_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "start_at",
        "end_at",
        "status",
        "missed_at",
        "completed_at",
        "cancelled_at",
        "updated_at",
    }
)

FIRST_ENTER_COLUMNS = frozenset({"qualified_at", "contract_at", "escrow_at", "closed_at"})


def check_changes(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}")
