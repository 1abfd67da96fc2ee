import hashlib
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dealflow.domain.errors import ConflictError, NotFoundError
from dealflow.domain.rules import ValidationError
from dealflow.services import leads, underwriting
from dealflow.services.address import LeadClassification, NormalizedAddress
from dealflow.services.utils import FixedClock
from dealflow.store.memory import MemoryStore
from dealflow.store.sqlite import SqliteStore

ORG = "org-1"
ROW = {
    "address": "12 Oak St.",
    "city": "Austin",
    "state": "TX",
    "zip": "78701",
    "building_sqft": "1500",
    "improvement_value": "120000",
}


def _store(tmp_path: Path, backend: str):
    if backend == "memory":
        return MemoryStore()
    store = SqliteStore(tmp_path / "test.sqlite")
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def _clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.mark.parametrize("backend", ["sqlite", "memory"])
def test_batch_upsert_is_idempotent(tmp_path: Path, backend: str) -> None:
    store = _store(tmp_path, backend)
    clock = _clock()

    first = leads.upsert_lead_from_batch(store, ORG, ROW, clock)
    clock.advance(timedelta(minutes=5))
    second = leads.upsert_lead_from_batch(store, ORG, {**ROW, "units": "3"}, clock)

    assert first.created is True
    assert second.created is False
    assert second.lead.lead_id == first.lead.lead_id
    assert second.lead.lead_type == "multi"
    assert second.lead.land_signals[0]["rule"] == "units_gt_1"
    assert second.lead.created_at == first.lead.created_at
    assert len(leads.list_leads(store, ORG)) == 1


@pytest.mark.parametrize("backend", ["sqlite", "memory"])
def test_batch_upsert_preserves_other_fields(tmp_path: Path, backend: str) -> None:
    store = _store(tmp_path, backend)
    clock = _clock()
    created = leads.upsert_lead_from_batch(store, ORG, ROW, clock).lead
    underwriting.update_financials(
        store, ORG, created.lead_id, clock, arv=250000, estimated_repairs=35000
    )
    leads.set_status(store, ORG, created.lead_id, clock, "contacted")

    again = leads.upsert_lead_from_batch(store, ORG, ROW, clock).lead
    assert again.status == "contacted"
    assert again.arv == 250000
    assert again.moa == pytest.approx(130000)


@pytest.mark.parametrize("backend", ["sqlite", "memory"])
def test_same_address_in_other_org_is_separate(tmp_path: Path, backend: str) -> None:
    store = _store(tmp_path, backend)
    clock = _clock()
    a = leads.upsert_lead_from_batch(store, ORG, ROW, clock)
    b = leads.upsert_lead_from_batch(store, "org-2", ROW, clock)
    assert b.created is True
    assert a.lead.address_hash != b.lead.address_hash


def test_hash_is_org_scoped_digest_of_canonical(tmp_path: Path) -> None:
    store = MemoryStore()
    lead = leads.upsert_lead_from_batch(store, ORG, ROW, _clock()).lead
    canonical = "12 OAK ST, AUSTIN, TX 78701"
    assert lead.canonical_address == canonical
    assert lead.address_hash == hashlib.sha256(f"{ORG}|{canonical}".encode()).hexdigest()


def test_hash_prefers_normalizer_hash() -> None:
    store = MemoryStore()
    lead = leads.upsert_lead_from_batch(
        store,
        ORG,
        ROW,
        _clock(),
        normalizer=lambda row: {"canonical": "X", "hash": "abc"},
    ).lead
    assert lead.address_hash == hashlib.sha256(f"{ORG}|abc".encode()).hexdigest()


def test_canonical_fallback_when_normalizer_blank() -> None:
    store = MemoryStore()
    lead = leads.upsert_lead_from_batch(
        store,
        ORG,
        {"address": "  9   elm   rd ", "city": "waco", "state": "tx", "zip": "76701"},
        _clock(),
        normalizer=lambda row: NormalizedAddress(canonical="  "),
    ).lead
    assert lead.canonical_address == "9 ELM RD, WACO, TX 76701"


def test_classifier_result_shapes() -> None:
    store = MemoryStore()
    clock = _clock()
    as_string = leads.upsert_lead_from_batch(
        store, ORG, ROW, clock, classifier=lambda row: "other"
    ).lead
    assert as_string.lead_type == "other"

    as_object = leads.upsert_lead_from_batch(
        store,
        ORG,
        ROW,
        clock,
        classifier=lambda row: LeadClassification(type="land", signals=[{"rule": "manual"}]),
    ).lead
    assert as_object.lead_type == "land"
    assert as_object.land_signals == [{"rule": "manual"}]

    unknown = leads.upsert_lead_from_batch(store, ORG, ROW, clock, classifier=lambda row: 42).lead
    assert unknown.lead_type == "sfr"
    # No new signals keeps the previous ones.
    assert unknown.land_signals == [{"rule": "manual"}]


def test_import_rows_counts() -> None:
    store = MemoryStore()
    rows = [ROW, {**ROW, "address": "14 Oak St"}, ROW, {"city": "Austin"}]
    summary = leads.import_rows(store, ORG, rows, _clock())
    assert summary.scanned == 4
    assert summary.created == 2
    assert summary.updated == 1
    assert summary.skipped == 1
    assert summary.errors[0].startswith("row 4:")


@pytest.mark.parametrize("backend", ["sqlite", "memory"])
def test_add_lead_computes_underwriting_and_rejects_duplicates(
    tmp_path: Path, backend: str
) -> None:
    store = _store(tmp_path, backend)
    clock = _clock()
    lead = leads.add_lead(
        store,
        ORG,
        clock,
        address="12 Oak St",
        city="Austin",
        state="TX",
        zip="78701",
        arv=250000,
        estimated_repairs=35000,
        offer_price=90000,
    )
    assert lead.moa == pytest.approx(130000)
    assert lead.deal_score == 80
    assert leads.get_lead(store, ORG, lead.lead_id) == lead

    with pytest.raises(ConflictError):
        leads.add_lead(
            store, ORG, clock, address="12 OAK ST.", city="austin", state="tx", zip="78701"
        )


def test_add_lead_validates_numbers() -> None:
    with pytest.raises(ValidationError):
        leads.add_lead(
            MemoryStore(),
            ORG,
            _clock(),
            address="1 Main",
            city="X",
            state="TX",
            zip="1",
            arv="lots",
        )


@pytest.mark.parametrize("backend", ["sqlite", "memory"])
def test_archive_hides_lead_from_default_list(tmp_path: Path, backend: str) -> None:
    store = _store(tmp_path, backend)
    clock = _clock()
    lead = leads.upsert_lead_from_batch(store, ORG, ROW, clock).lead
    archived = leads.archive_lead(store, ORG, lead.lead_id, clock)
    assert archived.archived_at == clock.now()
    assert leads.list_leads(store, ORG) == []
    assert len(leads.list_leads(store, ORG, include_archived=True)) == 1


def test_lead_lookup_is_org_scoped() -> None:
    store = MemoryStore()
    lead = leads.upsert_lead_from_batch(store, ORG, ROW, _clock()).lead
    with pytest.raises(NotFoundError):
        leads.get_lead(store, "org-2", lead.lead_id)
    with pytest.raises(NotFoundError):
        leads.set_status(store, "org-2", lead.lead_id, _clock(), "dead")


def test_update_financials_recomputes() -> None:
    store = MemoryStore()
    clock = _clock()
    lead = leads.upsert_lead_from_batch(store, ORG, ROW, clock).lead
    updated = underwriting.update_financials(
        store, ORG, lead.lead_id, clock, arv=250000, estimated_repairs=35000, offer_price=140000
    )
    assert updated.deal_score == 60

    cleared = underwriting.update_financials(store, ORG, lead.lead_id, clock, arv=None)
    assert cleared.moa is None
    assert cleared.deal_score is None

    with pytest.raises(ValidationError):
        underwriting.update_financials(store, ORG, lead.lead_id, clock, investor_multiplier=1.5)
    with pytest.raises(ValidationError):
        underwriting.update_financials(store, ORG, lead.lead_id, clock, status="x")
