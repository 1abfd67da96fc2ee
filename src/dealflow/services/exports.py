from __future__ import annotations

import csv
import json
from collections.abc import Callable, Iterable
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any

from openpyxl import Workbook

from dealflow.domain.models import CalendarEvent, Deal, Lead, Reminder
from dealflow.services.utils import to_iso
from dealflow.store.base import DealflowStore

TABLES: list[tuple[str, type, Callable[[DealflowStore, str], list[Any]]]] = [
    ("leads", Lead, lambda store, org_id: store.list_leads(org_id, include_archived=True)),
    ("deals", Deal, lambda store, org_id: store.list_deals(org_id)),
    ("reminders", Reminder, lambda store, org_id: store.list_reminders(org_id)),
    ("calendar_events", CalendarEvent, lambda store, org_id: store.list_calendar_events(org_id)),
]


def export_excel(store: DealflowStore, org_id: str, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    wb.remove(wb.active)

    for table, model, load in TABLES:
        ws = wb.create_sheet(title=table)
        _write_sheet(ws, _headers(model), load(store, org_id))

    wb.save(out_path)


def export_csv_tables(store: DealflowStore, org_id: str, out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for table, model, load in TABLES:
        headers = _headers(model)
        csv_path = out_dir / f"{table}.csv"
        with csv_path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(headers)
            for record in load(store, org_id):
                writer.writerow(_row(record, headers))


def _headers(model: type) -> list[str]:
    return [f.name for f in fields(model)]


def _write_sheet(ws, headers: list[str], records: Iterable[Any]) -> None:
    ws.append(headers)
    for record in records:
        ws.append(_row(record, headers))


def _row(record: Any, headers: list[str]) -> list[Any]:
    data = asdict(record)
    return [_cell(data[h]) for h in headers]


def _cell(value: Any) -> Any:
    # Excel cells cannot hold tz-aware datetimes or nested structures.
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value
