from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any

from dealflow.domain.errors import StorageFailure
from dealflow.domain.models import CalendarEvent, Deal, Lead, Reminder, StageChange
from dealflow.domain.stages import CalendarEventStatus, ReminderStatus
from dealflow.services.utils import from_iso, to_iso
from dealflow.store.base import (
    CALENDAR_EVENT_UPDATABLE_FIELDS,
    FIRST_ENTER_COLUMNS,
    LEAD_UPDATABLE_FIELDS,
    check_changes,
)
from dealflow.store.migrations import apply_schema

logger = logging.getLogger(__name__)

DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "archived_at",
        "stage_updated_at",
        "qualified_at",
        "contract_at",
        "escrow_at",
        "closed_at",
        "remind_at",
        "sent_at",
        "delivered_at",
        "start_at",
        "end_at",
        "missed_at",
        "completed_at",
        "cancelled_at",
    }
)
BOOL_FIELDS = frozenset({"is_qualified"})
JSON_FIELDS = frozenset({"land_signals"})


def _to_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DATETIME_FIELDS:
        return to_iso(value)
    if name in BOOL_FIELDS:
        return 1 if value else 0
    if name in JSON_FIELDS:
        return json.dumps(value, sort_keys=True)
    return value


def _from_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DATETIME_FIELDS:
        return from_iso(value)
    if name in BOOL_FIELDS:
        return bool(value)
    if name in JSON_FIELDS:
        return json.loads(value)
    return value


def _row_to(model, row: sqlite3.Row | None):
    if row is None:
        return None
    keys = set(row.keys())
    values = {f.name: _from_db(f.name, row[f.name]) for f in fields(model) if f.name in keys}
    return model(**values)


def _insert_parts(record) -> tuple[list[str], list[Any]]:
    data = asdict(record)
    columns = list(data)
    return columns, [_to_db(name, data[name]) for name in columns]


class SqliteSession:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        cur = self._conn.execute(query, list(params or []))
        return cur.rowcount

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        cur = self._conn.execute(query, list(params or []))
        return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        cur = self._conn.execute(query, list(params or []))
        return cur.fetchone()

    def insert(self, table: str, record, on_conflict: str = "") -> int:
        columns, values = _insert_parts(record)
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        if on_conflict:
            query = f"{query} {on_conflict}"
        return self.execute(query, values)


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("sqlite error on %s: %s", self.db_path, exc)
            raise StorageFailure(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def session(self):
        with self.connect() as conn:
            yield SqliteSession(conn)

    def apply_schema(self, schema_path: Path) -> None:
        with self.connect() as conn:
            apply_schema(conn, schema_path)

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        with self.session() as session:
            return session.execute(query, params)

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        with self.session() as session:
            return session.fetch_all(query, params)

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        with self.session() as session:
            return session.fetch_one(query, params)

    # leads

    def get_lead(self, org_id: str, lead_id: str) -> Lead | None:
        row = self.fetch_one(
            "SELECT * FROM leads WHERE org_id = ? AND lead_id = ?", (org_id, lead_id)
        )
        return _row_to(Lead, row)

    def insert_lead(self, lead: Lead) -> bool:
        with self.session() as session:
            inserted = session.insert(
                "leads", lead, on_conflict="ON CONFLICT(org_id, address_hash) DO NOTHING"
            )
        return inserted == 1

    def upsert_lead_by_address(self, lead: Lead) -> tuple[Lead, bool]:
        with self.session() as session:
            session.insert(
                "leads",
                lead,
                on_conflict=(
                    "ON CONFLICT(org_id, address_hash) DO UPDATE SET "
                    "lead_type = excluded.lead_type, "
                    "land_signals = COALESCE(excluded.land_signals, leads.land_signals), "
                    "updated_at = excluded.updated_at"
                ),
            )
            row = session.fetch_one(
                "SELECT * FROM leads WHERE org_id = ? AND address_hash = ?",
                (lead.org_id, lead.address_hash),
            )
        stored = _row_to(Lead, row)
        return stored, stored.lead_id == lead.lead_id

    def update_lead(self, org_id: str, lead_id: str, changes: dict[str, Any]) -> Lead | None:
        check_changes(changes, LEAD_UPDATABLE_FIELDS)
        with self.session() as session:
            if changes:
                assignments = ", ".join(f"{name} = ?" for name in changes)
                params = [_to_db(name, value) for name, value in changes.items()]
                session.execute(
                    f"UPDATE leads SET {assignments} WHERE org_id = ? AND lead_id = ?",
                    [*params, org_id, lead_id],
                )
            row = session.fetch_one(
                "SELECT * FROM leads WHERE org_id = ? AND lead_id = ?", (org_id, lead_id)
            )
        return _row_to(Lead, row)

    def list_leads(
        self, org_id: str, status: str | None = None, include_archived: bool = False
    ) -> list[Lead]:
        clauses = ["org_id = ?"]
        params: list[Any] = [org_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if not include_archived:
            clauses.append("archived_at IS NULL")
        rows = self.fetch_all(
            f"SELECT * FROM leads WHERE {' AND '.join(clauses)} ORDER BY updated_at DESC",
            params,
        )
        return [_row_to(Lead, row) for row in rows]

    # deals

    def get_deal(self, org_id: str, deal_id: str) -> Deal | None:
        row = self.fetch_one(
            "SELECT * FROM deals WHERE org_id = ? AND deal_id = ?", (org_id, deal_id)
        )
        return _row_to(Deal, row)

    def insert_deal_if_absent(self, deal: Deal) -> Deal:
        with self.session() as session:
            session.insert("deals", deal, on_conflict="ON CONFLICT(org_id, lead_id) DO NOTHING")
            row = session.fetch_one(
                "SELECT * FROM deals WHERE org_id = ? AND lead_id = ?",
                (deal.org_id, deal.lead_id),
            )
        return _row_to(Deal, row)

    def apply_stage_change(self, org_id: str, deal_id: str, change: StageChange) -> Deal | None:
        at = to_iso(change.at)
        updates = ["stage = ?", "stage_updated_at = ?", "updated_at = ?"]
        params: list[Any] = [change.stage, at, at]
        if change.first_enter_field:
            column = change.first_enter_field
            if column not in FIRST_ENTER_COLUMNS:
                raise ValueError(f"Unknown stage timestamp column: {column}")
            updates.append(f"{column} = COALESCE({column}, ?)")
            params.append(at)
        if change.set_fee_expected:
            updates.append("assignment_fee_expected = ?")
            params.append(change.fee_expected)
        if change.set_fee_actual:
            updates.append("assignment_fee_actual = ?")
            params.append(change.fee_actual)

        with self.session() as session:
            updated = session.execute(
                f"UPDATE deals SET {', '.join(updates)} WHERE org_id = ? AND deal_id = ?",
                [*params, org_id, deal_id],
            )
            if updated == 0:
                return None
            row = session.fetch_one(
                "SELECT * FROM deals WHERE org_id = ? AND deal_id = ?", (org_id, deal_id)
            )
        return _row_to(Deal, row)

    def list_deals(self, org_id: str, stage: str | None = None) -> list[Deal]:
        params: list[Any] = [org_id]
        where = "WHERE org_id = ?"
        if stage:
            where += " AND stage = ?"
            params.append(stage)
        rows = self.fetch_all(f"SELECT * FROM deals {where} ORDER BY created_at DESC", params)
        return [_row_to(Deal, row) for row in rows]

    # reminders

    def insert_reminder(self, reminder: Reminder) -> bool:
        with self.session() as session:
            inserted = session.insert(
                "reminders", reminder, on_conflict="ON CONFLICT(idempotency_key) DO NOTHING"
            )
        return inserted == 1

    def upsert_reminder(self, reminder: Reminder) -> Reminder:
        with self.session() as session:
            session.insert(
                "reminders",
                reminder,
                on_conflict=(
                    "ON CONFLICT(idempotency_key) DO UPDATE SET "
                    "remind_at = excluded.remind_at, "
                    "reminder_offset = excluded.reminder_offset, "
                    "timezone = excluded.timezone, "
                    f"status = '{ReminderStatus.PENDING.value}', "
                    "sent_at = NULL, delivered_at = NULL, "
                    "updated_at = excluded.updated_at"
                ),
            )
            row = session.fetch_one(
                "SELECT * FROM reminders WHERE idempotency_key = ?", (reminder.idempotency_key,)
            )
        return _row_to(Reminder, row)

    def get_reminder(self, org_id: str, user_id: str, reminder_id: str) -> Reminder | None:
        row = self.fetch_one(
            "SELECT * FROM reminders WHERE reminder_id = ? AND org_id = ? AND user_id = ?",
            (reminder_id, org_id, user_id),
        )
        return _row_to(Reminder, row)

    def list_due_reminders(self, now: datetime, limit: int) -> list[Reminder]:
        rows = self.fetch_all(
            "SELECT * FROM reminders WHERE status = ? AND remind_at <= ? "
            "ORDER BY remind_at ASC LIMIT ?",
            (ReminderStatus.PENDING.value, to_iso(now), limit),
        )
        return [_row_to(Reminder, row) for row in rows]

    def list_user_reminders(
        self, org_id: str, user_id: str, status: str, limit: int
    ) -> list[Reminder]:
        rows = self.fetch_all(
            "SELECT * FROM reminders WHERE org_id = ? AND user_id = ? AND status = ? "
            "AND delivered_at IS NULL ORDER BY remind_at ASC LIMIT ?",
            (org_id, user_id, status, limit),
        )
        return [_row_to(Reminder, row) for row in rows]

    def list_reminders(self, org_id: str) -> list[Reminder]:
        rows = self.fetch_all(
            "SELECT * FROM reminders WHERE org_id = ? ORDER BY remind_at ASC", (org_id,)
        )
        return [_row_to(Reminder, row) for row in rows]

    def transition_reminder(
        self,
        reminder_id: str,
        status: str,
        at: datetime,
        from_statuses: Iterable[str] | None = None,
    ) -> Reminder | None:
        at_iso = to_iso(at)
        updates = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, at_iso]
        if status in (ReminderStatus.SENT.value, ReminderStatus.MISSED.value):
            updates.append("sent_at = ?")
            params.append(at_iso)
        elif status == ReminderStatus.DELIVERED.value:
            updates.append("delivered_at = ?")
            params.append(at_iso)
        where = "reminder_id = ?"
        params.append(reminder_id)
        if from_statuses is not None:
            allowed = list(from_statuses)
            where += f" AND status IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)

        with self.session() as session:
            updated = session.execute(
                f"UPDATE reminders SET {', '.join(updates)} WHERE {where}", params
            )
            if updated == 0:
                return None
            row = session.fetch_one(
                "SELECT * FROM reminders WHERE reminder_id = ?", (reminder_id,)
            )
        return _row_to(Reminder, row)

    def cancel_reminders_for_target(
        self, org_id: str, user_id: str, target_type: str, target_id: str, at: datetime
    ) -> int:
        return self.execute(
            "UPDATE reminders SET status = ?, updated_at = ? "
            "WHERE org_id = ? AND user_id = ? AND target_type = ? AND target_id = ? "
            "AND status IN (?, ?)",
            (
                ReminderStatus.CANCELLED.value,
                to_iso(at),
                org_id,
                user_id,
                target_type,
                target_id,
                ReminderStatus.PENDING.value,
                ReminderStatus.SENT.value,
            ),
        )

    # calendar events

    def insert_calendar_event(self, event: CalendarEvent) -> None:
        with self.session() as session:
            session.insert("calendar_events", event)

    def get_calendar_event(self, org_id: str, event_id: str) -> CalendarEvent | None:
        row = self.fetch_one(
            "SELECT * FROM calendar_events WHERE org_id = ? AND event_id = ?", (org_id, event_id)
        )
        return _row_to(CalendarEvent, row)

    def update_calendar_event(
        self, org_id: str, event_id: str, changes: dict[str, Any]
    ) -> CalendarEvent | None:
        check_changes(changes, CALENDAR_EVENT_UPDATABLE_FIELDS)
        with self.session() as session:
            if changes:
                assignments = ", ".join(f"{name} = ?" for name in changes)
                params = [_to_db(name, value) for name, value in changes.items()]
                session.execute(
                    f"UPDATE calendar_events SET {assignments} WHERE org_id = ? AND event_id = ?",
                    [*params, org_id, event_id],
                )
            row = session.fetch_one(
                "SELECT * FROM calendar_events WHERE org_id = ? AND event_id = ?",
                (org_id, event_id),
            )
        return _row_to(CalendarEvent, row)

    def mark_missed_events(self, cutoff: datetime, at: datetime) -> int:
        at_iso = to_iso(at)
        return self.execute(
            "UPDATE calendar_events SET status = ?, missed_at = ?, updated_at = ? "
            "WHERE status = ? AND end_at IS NOT NULL AND end_at < ?",
            (
                CalendarEventStatus.MISSED.value,
                at_iso,
                at_iso,
                CalendarEventStatus.SCHEDULED.value,
                to_iso(cutoff),
            ),
        )

    def list_calendar_events(self, org_id: str) -> list[CalendarEvent]:
        rows = self.fetch_all(
            "SELECT * FROM calendar_events WHERE org_id = ? ORDER BY start_at ASC", (org_id,)
        )
        return [_row_to(CalendarEvent, row) for row in rows]
