"""Deal pipeline stage machine.

Any of the seven stages may be targeted from any other. What depends on order
is the stage-entry timestamps: each is written the first time its stage is
entered and never again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from dealflow.domain import rules
from dealflow.domain.errors import InvalidStageError, NotFoundError
from dealflow.domain.models import Deal, StageChange
from dealflow.domain.stages import FIRST_ENTER_FIELDS, DealStage
from dealflow.services.events import EventLogger
from dealflow.services.utils import Clock
from dealflow.store.base import DealflowStore

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

CLOSED_STAGES = (DealStage.CLOSED_WON.value, DealStage.CLOSED_LOST.value)


@dataclass(frozen=True)
class PipelineSummary:
    total: int
    open: int
    won: int
    lost: int
    by_stage: dict[str, int] = field(default_factory=dict)
    expected_fees: float = 0.0
    actual_fees: float = 0.0
    close_rate: float = 0.0


def parse_stage(value: str | DealStage) -> DealStage:
    try:
        return DealStage(value)
    except ValueError as exc:
        allowed = ", ".join(stage.value for stage in DealStage)
        raise InvalidStageError(f"Invalid stage {value!r}; expected one of: {allowed}") from exc


def create_or_get_deal(store: DealflowStore, org_id: str, lead_id: str, clock: Clock) -> Deal:
    rules.require(lead_id, "lead_id")
    if store.get_lead(org_id, lead_id) is None:
        raise NotFoundError("Lead not found.")
    now = clock.now()
    candidate = Deal(
        deal_id=str(uuid4()),
        org_id=org_id,
        lead_id=lead_id,
        stage=DealStage.NEW.value,
        stage_updated_at=now,
        created_at=now,
        updated_at=now,
    )
    deal = store.insert_deal_if_absent(candidate)
    if deal.deal_id == candidate.deal_id:
        logger.debug("created deal %s for lead %s", deal.deal_id, lead_id)
    return deal


def transition_stage(
    store: DealflowStore,
    org_id: str,
    deal_id: str,
    target_stage: str | DealStage,
    clock: Clock,
    *,
    assignment_fee_expected: Any = UNSET,
    assignment_fee_actual: Any = UNSET,
    events: EventLogger | None = None,
) -> Deal:
    stage = parse_stage(target_stage)
    current = store.get_deal(org_id, deal_id)
    if current is None:
        raise NotFoundError("Deal not found.")

    change = build_stage_change(
        stage,
        clock,
        assignment_fee_expected=assignment_fee_expected,
        assignment_fee_actual=assignment_fee_actual,
    )
    updated = store.apply_stage_change(org_id, deal_id, change)
    if updated is None:
        raise NotFoundError("Deal not found.")

    if events:
        events.log(
            event_type="stage_changed",
            entity_type="deal",
            entity_id=deal_id,
            org_id=org_id,
            changed_fields=_changed_fields(current, updated),
        )
    return updated


def build_stage_change(
    stage: DealStage,
    clock: Clock,
    *,
    assignment_fee_expected: Any = UNSET,
    assignment_fee_actual: Any = UNSET,
) -> StageChange:
    """Translate a transition request into the single write the store applies.

    Malformed fees are not errors: an invalid expected fee is stored as null
    and an invalid actual fee leaves the stored value alone.
    """
    set_fee_expected = assignment_fee_expected is not UNSET
    fee_expected = rules.finite_number(assignment_fee_expected) if set_fee_expected else None

    set_fee_actual = False
    fee_actual = None
    if stage is DealStage.CLOSED_WON and assignment_fee_actual is not UNSET:
        fee_actual = rules.finite_number(assignment_fee_actual)
        set_fee_actual = fee_actual is not None and fee_actual >= 0
        if not set_fee_actual:
            logger.debug("ignoring invalid assignment_fee_actual %r", assignment_fee_actual)
            fee_actual = None

    return StageChange(
        stage=stage.value,
        at=clock.now(),
        first_enter_field=FIRST_ENTER_FIELDS.get(stage),
        set_fee_expected=set_fee_expected,
        fee_expected=fee_expected,
        set_fee_actual=set_fee_actual,
        fee_actual=fee_actual,
    )


def get_deal(store: DealflowStore, org_id: str, deal_id: str) -> Deal:
    deal = store.get_deal(org_id, deal_id)
    if deal is None:
        raise NotFoundError("Deal not found.")
    return deal


def list_deals(store: DealflowStore, org_id: str, stage: str | None = None) -> list[Deal]:
    if stage is not None:
        stage = parse_stage(stage).value
    return store.list_deals(org_id, stage)


def pipeline_summary(store: DealflowStore, org_id: str) -> PipelineSummary:
    deals = store.list_deals(org_id)
    by_stage = {stage.value: 0 for stage in DealStage}
    expected = 0.0
    actual = 0.0
    for deal in deals:
        by_stage[deal.stage] = by_stage.get(deal.stage, 0) + 1
        if deal.assignment_fee_expected is not None and deal.stage not in CLOSED_STAGES:
            expected += deal.assignment_fee_expected
        if deal.stage == DealStage.CLOSED_WON.value and deal.assignment_fee_actual is not None:
            actual += deal.assignment_fee_actual

    won = by_stage[DealStage.CLOSED_WON.value]
    lost = by_stage[DealStage.CLOSED_LOST.value]
    total = len(deals)
    return PipelineSummary(
        total=total,
        open=total - won - lost,
        won=won,
        lost=lost,
        by_stage=by_stage,
        expected_fees=expected,
        actual_fees=actual,
        close_rate=(won / total * 100) if total else 0.0,
    )


def _changed_fields(before: Deal, after: Deal) -> list[str]:
    names = (
        "stage",
        "qualified_at",
        "contract_at",
        "escrow_at",
        "closed_at",
        "assignment_fee_expected",
        "assignment_fee_actual",
    )
    return [name for name in names if getattr(before, name) != getattr(after, name)]
