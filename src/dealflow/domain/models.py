from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Lead:
    lead_id: str
    org_id: str
    address: str
    city: str
    state: str
    zip: str
    canonical_address: str
    address_hash: str
    created_at: datetime
    updated_at: datetime
    status: str = "new"
    is_qualified: bool = False
    arv: float | None = None
    estimated_repairs: float | None = None
    investor_multiplier: float = 0.70
    desired_assignment_fee: float = 10000.0
    offer_price: float | None = None
    moa: float | None = None
    deal_score: float | None = None
    lead_type: str = "sfr"
    land_signals: list[dict[str, Any]] | None = None
    seller_name: str | None = None
    archived_at: datetime | None = None


@dataclass(frozen=True)
class Deal:
    deal_id: str
    org_id: str
    lead_id: str
    stage: str
    stage_updated_at: datetime
    created_at: datetime
    updated_at: datetime
    qualified_at: datetime | None = None
    contract_at: datetime | None = None
    escrow_at: datetime | None = None
    closed_at: datetime | None = None
    assignment_fee_expected: float | None = None
    assignment_fee_actual: float | None = None


@dataclass(frozen=True)
class Reminder:
    reminder_id: str
    org_id: str
    user_id: str
    target_type: str
    target_id: str
    remind_at: datetime
    reminder_offset: int
    channel: str
    status: str
    idempotency_key: str
    created_at: datetime
    updated_at: datetime
    timezone: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    org_id: str
    user_id: str
    title: str
    start_at: datetime
    end_at: datetime | None
    status: str
    created_at: datetime
    updated_at: datetime
    missed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


@dataclass(frozen=True)
class StageChange:
    """One atomic stage write.

    ``first_enter_field`` is only set when still null. Fee values are applied
    only when the matching ``set_*`` flag is true.
    """

    stage: str
    at: datetime
    first_enter_field: str | None = None
    set_fee_expected: bool = False
    fee_expected: float | None = None
    set_fee_actual: bool = False
    fee_actual: float | None = None

