from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dealflow.domain.errors import InvalidStageError, NotFoundError, StorageFailure
from dealflow.services import deals, leads
from dealflow.services.events import EventLogger
from dealflow.services.utils import FixedClock
from dealflow.store.memory import MemoryStore
from dealflow.store.sqlite import SqliteStore

ORG = "org-1"
ROW = {"address": "12 Oak St", "city": "Austin", "state": "TX", "zip": "78701"}


def _store(tmp_path: Path, backend: str):
    if backend == "memory":
        return MemoryStore()
    store = SqliteStore(tmp_path / "test.sqlite")
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def _deal(store, clock, org_id: str = ORG):
    lead = leads.upsert_lead_from_batch(store, org_id, ROW, clock).lead
    return deals.create_or_get_deal(store, org_id, lead.lead_id, clock)


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    return _store(tmp_path, request.param)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


def test_create_or_get_deal_is_idempotent(store, clock) -> None:
    first = _deal(store, clock)
    second = deals.create_or_get_deal(store, ORG, first.lead_id, clock)
    assert first.deal_id == second.deal_id
    assert first.stage == "NEW"
    assert len(deals.list_deals(store, ORG)) == 1


def test_create_deal_requires_lead_in_org(store, clock) -> None:
    lead = leads.upsert_lead_from_batch(store, ORG, ROW, clock).lead
    with pytest.raises(NotFoundError):
        deals.create_or_get_deal(store, "org-2", lead.lead_id, clock)
    with pytest.raises(NotFoundError):
        deals.create_or_get_deal(store, ORG, "missing", clock)


def test_first_enter_timestamp_survives_reentry(store, clock) -> None:
    deal = _deal(store, clock)
    first = deals.transition_stage(store, ORG, deal.deal_id, "QUALIFIED", clock)
    first_qualified_at = first.qualified_at
    assert first_qualified_at == clock.now()

    clock.advance(timedelta(hours=1))
    deals.transition_stage(store, ORG, deal.deal_id, "CONTACTED", clock)
    clock.advance(timedelta(hours=1))
    again = deals.transition_stage(store, ORG, deal.deal_id, "QUALIFIED", clock)

    assert again.qualified_at == first_qualified_at
    assert again.stage_updated_at == clock.now()
    assert again.stage_updated_at > first_qualified_at


def test_each_stage_sets_its_own_timestamp(store, clock) -> None:
    deal = _deal(store, clock)
    for stage in ("UNDER_CONTRACT", "IN_ESCROW", "CLOSED_LOST"):
        clock.advance(timedelta(days=1))
        deal = deals.transition_stage(store, ORG, deal.deal_id, stage, clock)
    closed_at = deal.closed_at
    assert deal.contract_at < deal.escrow_at < closed_at
    assert deal.qualified_at is None

    clock.advance(timedelta(days=1))
    won = deals.transition_stage(store, ORG, deal.deal_id, "CLOSED_WON", clock)
    assert won.closed_at == closed_at


def test_invalid_stage_checked_before_lookup(store, clock) -> None:
    deal = _deal(store, clock)
    with pytest.raises(InvalidStageError):
        deals.transition_stage(store, ORG, deal.deal_id, "WON", clock)
    with pytest.raises(InvalidStageError):
        deals.transition_stage(store, ORG, "missing", "WON", clock)
    with pytest.raises(NotFoundError):
        deals.transition_stage(store, ORG, "missing", "CONTACTED", clock)
    with pytest.raises(NotFoundError):
        deals.transition_stage(store, "org-2", deal.deal_id, "CONTACTED", clock)


def test_backward_moves_are_accepted(store, clock) -> None:
    deal = _deal(store, clock)
    deals.transition_stage(store, ORG, deal.deal_id, "CLOSED_WON", clock)
    back = deals.transition_stage(store, ORG, deal.deal_id, "NEW", clock)
    assert back.stage == "NEW"
    assert back.closed_at is not None


def test_fee_inputs(store, clock) -> None:
    deal = _deal(store, clock)
    deal = deals.transition_stage(
        store, ORG, deal.deal_id, "UNDER_CONTRACT", clock, assignment_fee_expected="12500"
    )
    assert deal.assignment_fee_expected == 12500

    deal = deals.transition_stage(
        store, ORG, deal.deal_id, "IN_ESCROW", clock, assignment_fee_actual=9000
    )
    assert deal.assignment_fee_actual is None

    deal = deals.transition_stage(
        store, ORG, deal.deal_id, "CLOSED_WON", clock, assignment_fee_actual=11000
    )
    assert deal.assignment_fee_actual == 11000
    assert deal.assignment_fee_expected == 12500

    for bad in (-1, "abc", float("nan"), float("inf")):
        deal = deals.transition_stage(
            store, ORG, deal.deal_id, "CLOSED_WON", clock, assignment_fee_actual=bad
        )
        assert deal.assignment_fee_actual == 11000

    deal = deals.transition_stage(
        store, ORG, deal.deal_id, "CLOSED_WON", clock, assignment_fee_expected="n/a"
    )
    assert deal.assignment_fee_expected is None


def test_pipeline_summary(store, clock) -> None:
    won = _deal(store, clock)
    deals.transition_stage(store, ORG, won.deal_id, "CLOSED_WON", clock, assignment_fee_actual=8000)

    other = leads.upsert_lead_from_batch(store, ORG, {**ROW, "address": "14 Oak St"}, clock).lead
    open_deal = deals.create_or_get_deal(store, ORG, other.lead_id, clock)
    deals.transition_stage(
        store, ORG, open_deal.deal_id, "UNDER_CONTRACT", clock, assignment_fee_expected=15000
    )

    summary = deals.pipeline_summary(store, ORG)
    assert summary.total == 2
    assert summary.won == 1
    assert summary.open == 1
    assert summary.by_stage["UNDER_CONTRACT"] == 1
    assert summary.expected_fees == 15000
    assert summary.actual_fees == 8000
    assert summary.close_rate == 50


def test_stage_change_event_logged(tmp_path: Path, clock) -> None:
    store = MemoryStore()
    events = EventLogger(path=tmp_path / "events.ndjson", workspace="test")
    deal = _deal(store, clock)
    deals.transition_stage(store, ORG, deal.deal_id, "QUALIFIED", clock, events=events)
    line = (tmp_path / "events.ndjson").read_text(encoding="utf-8").strip()
    assert '"event_type": "stage_changed"' in line
    assert '"qualified_at"' in line


def test_storage_failure_is_wrapped(tmp_path: Path, clock) -> None:
    store = SqliteStore(tmp_path / "empty.sqlite")
    with pytest.raises(StorageFailure):
        deals.get_deal(store, ORG, "anything")
