from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from dealflow.config import UnderwritingDefaults
from dealflow.domain import rules
from dealflow.domain.errors import ConflictError, NotFoundError
from dealflow.domain.models import Lead
from dealflow.domain.stages import LeadType
from dealflow.services.address import classify_lead_type, normalize_address
from dealflow.services.events import EventLogger
from dealflow.services.underwriting import underwrite
from dealflow.services.utils import Clock
from dealflow.store.base import DealflowStore

logger = logging.getLogger(__name__)

Normalizer = Callable[[Mapping[str, Any]], Any]
Classifier = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class BatchUpsertResult:
    lead: Lead
    created: bool


@dataclass
class ImportSummary:
    scanned: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def canonical_address(norm: Any, row: Mapping[str, Any]) -> str:
    """Normalizer's canonical form, else ``LINE1, CITY, STATE ZIP`` from parts."""
    canonical = _field(norm, "canonical")
    if isinstance(canonical, str) and canonical.strip():
        return canonical
    line1 = " ".join(_text(_first(_field(norm, "line1"), row.get("address"))).upper().split())
    city = _text(_first(_field(norm, "city"), row.get("city"))).upper()
    state = _text(_first(_field(norm, "state"), row.get("state"))).upper()
    zip_code = _text(_first(_field(norm, "zip"), row.get("zip")))
    return f"{line1}, {city}, {state} {zip_code}"


def org_scoped_hash(org_id: str, norm: Any, canonical: str) -> str:
    base = _field(norm, "address_hash")
    if not isinstance(base, str):
        base = _field(norm, "hash")
    if not isinstance(base, str):
        base = canonical
    return hashlib.sha256(f"{org_id}|{base}".encode("utf-8")).hexdigest()


def type_and_signals(result: Any) -> tuple[str, list[dict[str, Any]] | None]:
    if isinstance(result, str):
        return result, None
    lead_type = _field(result, "type")
    if isinstance(lead_type, str):
        return lead_type, _field(result, "signals")
    return LeadType.SFR.value, None


def upsert_lead_from_batch(
    store: DealflowStore,
    org_id: str,
    raw_row: Mapping[str, Any],
    clock: Clock,
    *,
    normalizer: Normalizer = normalize_address,
    classifier: Classifier = classify_lead_type,
    defaults: UnderwritingDefaults | None = None,
    events: EventLogger | None = None,
) -> BatchUpsertResult:
    """Insert a lead for the row's address, or refresh its classification.

    At most one lead exists per address per org: a repeat import only
    updates ``lead_type`` and ``land_signals``.
    """
    rules.require(org_id, "org_id")
    rules.require(raw_row.get("address"), "address")
    defaults = defaults or UnderwritingDefaults()

    norm = normalizer(raw_row)
    canonical = canonical_address(norm, raw_row)
    address_hash = org_scoped_hash(org_id, norm, canonical)
    lead_type, signals = type_and_signals(classifier(raw_row))

    now = clock.now()
    candidate = Lead(
        lead_id=str(uuid4()),
        org_id=org_id,
        address=_text(_first(_field(norm, "line1"), raw_row.get("address"))),
        city=_text(_first(_field(norm, "city"), raw_row.get("city"))),
        state=_text(_first(_field(norm, "state"), raw_row.get("state"))),
        zip=_text(_first(_field(norm, "zip"), raw_row.get("zip"))),
        canonical_address=canonical,
        address_hash=address_hash,
        created_at=now,
        updated_at=now,
        investor_multiplier=defaults.investor_multiplier,
        desired_assignment_fee=defaults.assignment_fee,
        lead_type=lead_type,
        land_signals=signals,
    )
    lead, created = store.upsert_lead_by_address(candidate)

    if events:
        events.log(
            event_type="lead_created" if created else "lead_reclassified",
            entity_type="lead",
            entity_id=lead.lead_id,
            org_id=org_id,
            changed_fields=[] if created else ["lead_type", "land_signals"],
            details={"lead_type": lead.lead_type},
        )
    return BatchUpsertResult(lead=lead, created=created)


def import_rows(
    store: DealflowStore,
    org_id: str,
    rows: Iterable[Mapping[str, Any]],
    clock: Clock,
    **kwargs: Any,
) -> ImportSummary:
    summary = ImportSummary()
    for index, row in enumerate(rows, start=1):
        summary.scanned += 1
        try:
            result = upsert_lead_from_batch(store, org_id, row, clock, **kwargs)
        except rules.ValidationError as exc:
            summary.skipped += 1
            summary.errors.append(f"row {index}: {exc}")
            continue
        if result.created:
            summary.created += 1
        else:
            summary.updated += 1
    logger.info(
        "imported leads org=%s scanned=%d created=%d updated=%d skipped=%d",
        org_id,
        summary.scanned,
        summary.created,
        summary.updated,
        summary.skipped,
    )
    return summary


def add_lead(
    store: DealflowStore,
    org_id: str,
    clock: Clock,
    *,
    address: str,
    city: str,
    state: str,
    zip: str,
    seller_name: str | None = None,
    status: str = "new",
    arv: Any = None,
    estimated_repairs: Any = None,
    offer_price: Any = None,
    investor_multiplier: Any = None,
    desired_assignment_fee: Any = None,
    defaults: UnderwritingDefaults | None = None,
    normalizer: Normalizer = normalize_address,
) -> Lead:
    """Manual entry. Raises ``ConflictError`` when the address already exists."""
    rules.require(address, "address")
    rules.require(status, "status")
    defaults = defaults or UnderwritingDefaults()
    row = {"address": address, "city": city, "state": state, "zip": zip}
    norm = normalizer(row)
    canonical = canonical_address(norm, row)

    multiplier = rules.parse_number(investor_multiplier, "investor_multiplier")
    if multiplier is None:
        multiplier = defaults.investor_multiplier
    if not 0 <= multiplier <= 1:
        raise rules.ValidationError("investor_multiplier must be between 0 and 1.")
    fee = rules.parse_number(desired_assignment_fee, "desired_assignment_fee")

    now = clock.now()
    lead = Lead(
        lead_id=str(uuid4()),
        org_id=org_id,
        address=_text(_first(_field(norm, "line1"), address)),
        city=_text(_first(_field(norm, "city"), city)),
        state=_text(_first(_field(norm, "state"), state)),
        zip=_text(_first(_field(norm, "zip"), zip)),
        canonical_address=canonical,
        address_hash=org_scoped_hash(org_id, norm, canonical),
        created_at=now,
        updated_at=now,
        status=status,
        arv=rules.parse_number(arv, "arv"),
        estimated_repairs=rules.parse_number(estimated_repairs, "estimated_repairs"),
        offer_price=rules.parse_number(offer_price, "offer_price"),
        investor_multiplier=multiplier,
        desired_assignment_fee=fee if fee is not None else defaults.assignment_fee,
        seller_name=seller_name,
    )
    moa, score = underwrite(lead)
    lead = replace(lead, moa=moa, deal_score=score)
    if not store.insert_lead(lead):
        raise ConflictError(f"A lead already exists for {canonical}.")
    return lead


def get_lead(store: DealflowStore, org_id: str, lead_id: str) -> Lead:
    lead = store.get_lead(org_id, lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    return lead


def list_leads(
    store: DealflowStore, org_id: str, status: str | None = None, include_archived: bool = False
) -> list[Lead]:
    return store.list_leads(org_id, status=status, include_archived=include_archived)


def set_status(
    store: DealflowStore,
    org_id: str,
    lead_id: str,
    clock: Clock,
    status: str,
    is_qualified: bool | None = None,
) -> Lead:
    rules.require(status, "status")
    changes: dict[str, Any] = {"status": status.strip(), "updated_at": clock.now()}
    if is_qualified is not None:
        changes["is_qualified"] = is_qualified
    lead = store.update_lead(org_id, lead_id, changes)
    if lead is None:
        raise NotFoundError("Lead not found.")
    return lead


def archive_lead(store: DealflowStore, org_id: str, lead_id: str, clock: Clock) -> Lead:
    current = get_lead(store, org_id, lead_id)
    if current.archived_at is not None:
        return current
    now = clock.now()
    lead = store.update_lead(org_id, lead_id, {"archived_at": now, "updated_at": now})
    if lead is None:
        raise NotFoundError("Lead not found.")
    return lead


def _field(value: Any, name: str) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(name)
    return getattr(value, name, None)


def _first(primary: Any, fallback: Any) -> Any:
    return primary if primary is not None else fallback


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()
