from __future__ import annotations

from dataclasses import replace
from typing import Any

from dealflow.domain import rules
from dealflow.domain.errors import NotFoundError
from dealflow.domain.formulas import calculate_deal_score, calculate_moa
from dealflow.domain.models import Lead
from dealflow.services.utils import Clock
from dealflow.store.base import DealflowStore

FINANCIAL_FIELDS = (
    "arv",
    "estimated_repairs",
    "investor_multiplier",
    "desired_assignment_fee",
    "offer_price",
)


def underwrite(lead: Lead) -> tuple[float | None, float | None]:
    moa = calculate_moa(
        lead.arv,
        lead.investor_multiplier,
        lead.estimated_repairs,
        lead.desired_assignment_fee,
    )
    score = calculate_deal_score(
        arv=lead.arv,
        estimated_repairs=lead.estimated_repairs,
        moa=moa,
        offer_price=lead.offer_price,
    )
    return moa, score


def recalc_underwriting(store: DealflowStore, org_id: str, lead_id: str, clock: Clock) -> Lead:
    lead = store.get_lead(org_id, lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    moa, score = underwrite(lead)
    updated = store.update_lead(
        org_id, lead_id, {"moa": moa, "deal_score": score, "updated_at": clock.now()}
    )
    if updated is None:
        raise NotFoundError("Lead not found.")
    return updated


def update_financials(
    store: DealflowStore, org_id: str, lead_id: str, clock: Clock, **inputs: Any
) -> Lead:
    """Patch financial inputs and store the recomputed outputs in one write."""
    unknown = set(inputs) - set(FINANCIAL_FIELDS)
    if unknown:
        raise rules.ValidationError(f"Unknown financial fields: {', '.join(sorted(unknown))}")

    changes: dict[str, Any] = {}
    for name, value in inputs.items():
        number = rules.parse_number(value, name)
        if name in ("investor_multiplier", "desired_assignment_fee") and number is None:
            raise rules.ValidationError(f"{name} is required.")
        if name == "investor_multiplier" and not 0 <= number <= 1:
            raise rules.ValidationError("investor_multiplier must be between 0 and 1.")
        changes[name] = number

    lead = store.get_lead(org_id, lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    moa, score = underwrite(replace(lead, **changes))
    changes.update(moa=moa, deal_score=score, updated_at=clock.now())
    updated = store.update_lead(org_id, lead_id, changes)
    if updated is None:
        raise NotFoundError("Lead not found.")
    return updated
