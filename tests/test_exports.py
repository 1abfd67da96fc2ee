import csv
from datetime import UTC, datetime, timedelta
from pathlib import Path

from openpyxl import load_workbook

from dealflow.services import calendar, deals, exports, leads
from dealflow.services.utils import FixedClock
from dealflow.store.memory import MemoryStore

ORG = "org-1"


def _seeded_store() -> MemoryStore:
    store = MemoryStore()
    clock = FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
    lead = leads.upsert_lead_from_batch(
        store,
        ORG,
        {"address": "12 Oak St", "city": "Austin", "state": "TX", "zip": "78701"},
        clock,
    ).lead
    deals.create_or_get_deal(store, ORG, lead.lead_id, clock)
    calendar.add_event(store, ORG, "user-1", "Walkthrough", clock.now() + timedelta(days=1), clock)
    leads.upsert_lead_from_batch(
        store,
        "org-2",
        {"address": "1 Elm St", "city": "Waco", "state": "TX", "zip": "76701"},
        clock,
    )
    return store


def test_export_excel(tmp_path: Path) -> None:
    out = tmp_path / "out" / "dealflow.xlsx"
    exports.export_excel(_seeded_store(), ORG, out)

    wb = load_workbook(out)
    assert wb.sheetnames == ["leads", "deals", "reminders", "calendar_events"]
    rows = list(wb["leads"].iter_rows(values_only=True))
    assert rows[0][0] == "lead_id"
    assert len(rows) == 2
    header = list(rows[0])
    assert rows[1][header.index("canonical_address")] == "12 OAK ST, AUSTIN, TX 78701"
    assert rows[1][header.index("created_at")] == "2026-03-01T12:00:00.000000+00:00"
    assert rows[1][header.index("land_signals")].startswith("[")
    assert wb["reminders"].max_row == 2


def test_export_csv_tables(tmp_path: Path) -> None:
    exports.export_csv_tables(_seeded_store(), ORG, tmp_path)

    with (tmp_path / "deals.csv").open(newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 1
    assert rows[0]["stage"] == "NEW"
    assert (tmp_path / "calendar_events.csv").exists()
