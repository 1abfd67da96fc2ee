from __future__ import annotations

import csv
import logging
import shutil
import time
from dataclasses import asdict, replace
from pathlib import Path

import typer

from dealflow import __version__
from dealflow.config import (
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    workspace_config_path,
    write_workspace_config,
)
from dealflow.domain import rules
from dealflow.domain.errors import DomainError
from dealflow.domain.formulas import meets_profit_threshold, offer_spread
from dealflow.domain.rules import ValidationError
from dealflow.services import calendar, deals, exports, leads, reminders, underwriting
from dealflow.services.deals import UNSET
from dealflow.services.events import EventLogger
from dealflow.services.scanner import ReminderScheduler, run_sweep
from dealflow.services.utils import SystemClock, today_iso
from dealflow.store.factory import open_store
from dealflow.store.migrations import SchemaError
from dealflow.store.sqlite import SqliteStore

app = typer.Typer(help="Dealflow CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
lead_app = typer.Typer(help="Lead operations")
deal_app = typer.Typer(help="Deal pipeline")
event_app = typer.Typer(help="Calendar events")
reminder_app = typer.Typer(help="Reminders")
scan_app = typer.Typer(help="Due-reminder and missed-event scanner")
export_app = typer.Typer(help="Exports")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(lead_app, name="lead")
app.add_typer(deal_app, name="deal")
app.add_typer(event_app, name="event")
app.add_typer(reminder_app, name="reminder")
app.add_typer(scan_app, name="scan")
app.add_typer(export_app, name="export")

SCHEMA_PATH = Path("resources/schema/canonical.yaml")

CLI_ERRORS = (DomainError, ValidationError)

clock = SystemClock()


@app.callback()
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    if version:
        typer.echo(__version__)
        raise typer.Exit()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@app.command("init")
def init() -> None:
    """Initialize directories for workspaces and outputs."""
    ensure_workspaces_dir()
    Path("data").mkdir(exist_ok=True)
    Path("exports").mkdir(exist_ok=True)
    typer.echo("Initialized dealflow directories.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    org_id: str = typer.Option("default", "--org", help="Organization the workspace acts for."),
    backend: str = typer.Option("sqlite", "--backend", help="sqlite or memory."),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing workspace config if it exists."
    ),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(
            f"Workspace already exists: {config_path}. Use --force to overwrite."
        )
    try:
        config_path = write_workspace_config(name, org_id, backend)
    except WorkspaceError as exc:
        _exit_with_error(str(exc))
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@schema_app.command("apply")
def schema_apply() -> None:
    ws = _load_workspace()
    if ws.store.backend != "sqlite":
        typer.echo("Memory backend has no schema to apply.")
        return
    try:
        SqliteStore(ws.store.sqlite_path).apply_schema(SCHEMA_PATH)
    except (DomainError, SchemaError) as exc:
        _exit_with_error(str(exc))
    typer.echo("Applied schema to local SQLite.")


@lead_app.command("add")
def lead_add(
    address: str = typer.Argument(...),
    city: str = typer.Option(..., "--city"),
    state: str = typer.Option(..., "--state"),
    zip_code: str = typer.Option(..., "--zip"),
    seller: str | None = typer.Option(None, "--seller"),
    arv: float | None = typer.Option(None, "--arv"),
    repairs: float | None = typer.Option(None, "--repairs"),
    offer: float | None = typer.Option(None, "--offer"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        lead = leads.add_lead(
            store,
            ws.org_id,
            clock,
            address=address,
            city=city,
            state=state,
            zip=zip_code,
            seller_name=seller,
            arv=arv,
            estimated_repairs=repairs,
            offer_price=offer,
            defaults=ws.underwriting,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created lead: {lead.lead_id} (moa={lead.moa} score={lead.deal_score})")


@lead_app.command("import")
def lead_import(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False),
    events: bool = typer.Option(
        True, "--events/--no-events", help="Write domain events to the workspace log."
    ),
) -> None:
    """Import a CSV of properties, deduplicated by address."""
    ws = _load_workspace()
    store = open_store(ws.store)
    with csv_path.open(newline="", encoding="utf-8-sig") as handle:
        rows = list(csv.DictReader(handle))
    try:
        summary = leads.import_rows(
            store,
            ws.org_id,
            rows,
            clock,
            defaults=ws.underwriting,
            events=_event_logger(ws, enabled=events),
        )
    except DomainError as exc:
        _exit_with_error(str(exc))
    typer.echo(
        f"Imported {summary.scanned} row(s): created={summary.created} "
        f"updated={summary.updated} skipped={summary.skipped}"
    )
    for error in summary.errors:
        typer.echo(f"  {error}", err=True)


@lead_app.command("list")
def lead_list(
    status: str | None = typer.Option(None, "--status"),
    include_archived: bool = typer.Option(False, "--archived", help="Include archived leads."),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    for lead in leads.list_leads(store, ws.org_id, status, include_archived):
        typer.echo(
            f"{lead.lead_id} | {lead.canonical_address} | {lead.lead_type} | {lead.status} "
            f"| moa={lead.moa} | score={lead.deal_score}"
        )


@lead_app.command("show")
def lead_show(lead_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        lead = leads.get_lead(store, ws.org_id, lead_id)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    for key, value in asdict(lead).items():
        typer.echo(f"{key}: {value}")
    typer.echo(f"offer_spread: {offer_spread(lead.offer_price, lead.moa)}")
    typer.echo(f"meets_profit_threshold: {meets_profit_threshold(lead.moa, lead.offer_price)}")


@lead_app.command("financials")
def lead_financials(
    lead_id: str = typer.Argument(...),
    arv: float | None = typer.Option(None, "--arv"),
    repairs: float | None = typer.Option(None, "--repairs"),
    multiplier: float | None = typer.Option(None, "--multiplier"),
    fee: float | None = typer.Option(None, "--fee"),
    offer: float | None = typer.Option(None, "--offer"),
) -> None:
    """Update financial inputs and recompute MOA and deal score."""
    ws = _load_workspace()
    store = open_store(ws.store)
    provided = {
        "arv": arv,
        "estimated_repairs": repairs,
        "investor_multiplier": multiplier,
        "desired_assignment_fee": fee,
        "offer_price": offer,
    }
    inputs = {name: value for name, value in provided.items() if value is not None}
    try:
        if inputs:
            lead = underwriting.update_financials(store, ws.org_id, lead_id, clock, **inputs)
        else:
            lead = underwriting.recalc_underwriting(store, ws.org_id, lead_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"{lead.lead_id} | moa={lead.moa} | score={lead.deal_score}")


@lead_app.command("status")
def lead_status(
    lead_id: str = typer.Argument(...),
    status: str = typer.Argument(...),
    qualified: bool | None = typer.Option(None, "--qualified/--not-qualified"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        lead = leads.set_status(store, ws.org_id, lead_id, clock, status, qualified)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"{lead.lead_id} status={lead.status} qualified={lead.is_qualified}")


@lead_app.command("archive")
def lead_archive(lead_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        lead = leads.archive_lead(store, ws.org_id, lead_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Archived lead: {lead.lead_id}")


@deal_app.command("create")
def deal_create(lead_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        deal = deals.create_or_get_deal(store, ws.org_id, lead_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Deal: {deal.deal_id} stage={deal.stage}")


@deal_app.command("stage")
def deal_stage(
    deal_id: str = typer.Argument(...),
    stage: str = typer.Argument(..., help="Target stage, e.g. UNDER_CONTRACT."),
    fee_expected: str | None = typer.Option(None, "--fee-expected"),
    fee_actual: str | None = typer.Option(None, "--fee-actual"),
    events: bool = typer.Option(
        True, "--events/--no-events", help="Write domain events to the workspace log."
    ),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        deal = deals.transition_stage(
            store,
            ws.org_id,
            deal_id,
            stage.strip().upper(),
            clock,
            assignment_fee_expected=UNSET if fee_expected is None else fee_expected,
            assignment_fee_actual=UNSET if fee_actual is None else fee_actual,
            events=_event_logger(ws, enabled=events),
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(
        f"{deal.deal_id} stage={deal.stage} expected={deal.assignment_fee_expected} "
        f"actual={deal.assignment_fee_actual}"
    )


@deal_app.command("list")
def deal_list(stage: str | None = typer.Option(None, "--stage")) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        rows = deals.list_deals(store, ws.org_id, stage.strip().upper() if stage else None)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    for deal in rows:
        typer.echo(
            f"{deal.deal_id} | {deal.lead_id} | {deal.stage} | {deal.stage_updated_at:%Y-%m-%d}"
        )


@deal_app.command("summary")
def deal_summary() -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    summary = deals.pipeline_summary(store, ws.org_id)
    for stage, count in summary.by_stage.items():
        typer.echo(f"{stage}: {count}")
    typer.echo(f"open={summary.open} won={summary.won} lost={summary.lost}")
    typer.echo(
        f"expected_fees={summary.expected_fees:.2f} actual_fees={summary.actual_fees:.2f} "
        f"close_rate={summary.close_rate:.1f}%"
    )


@event_app.command("add")
def event_add(
    title: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
    start: str = typer.Option(..., "--start", help="ISO 8601 start time."),
    end: str | None = typer.Option(None, "--end", help="ISO 8601 end time."),
    offset: int = typer.Option(-60, "--offset", help="Reminder offset in minutes."),
    reminder: bool = typer.Option(True, "--reminder/--no-reminder"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        event = calendar.add_event(
            store,
            ws.org_id,
            user,
            title,
            rules.parse_datetime(start, "start"),
            clock,
            end_at=rules.parse_datetime(end, "end"),
            reminder_offset=offset if reminder else None,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created event: {event.event_id}")


@event_app.command("list")
def event_list() -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    for event in calendar.list_events(store, ws.org_id):
        typer.echo(
            f"{event.event_id} | {event.start_at.isoformat()} | {event.status} "
            f"| {event.user_id} | {event.title}"
        )


@event_app.command("reschedule")
def event_reschedule(
    event_id: str = typer.Argument(...),
    start: str = typer.Option(..., "--start"),
    end: str | None = typer.Option(None, "--end"),
    offset: int = typer.Option(-60, "--offset"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        event = calendar.reschedule_event(
            store,
            ws.org_id,
            event_id,
            rules.parse_datetime(start, "start"),
            clock,
            end_at=rules.parse_datetime(end, "end"),
            reminder_offset=offset,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Rescheduled event: {event.event_id} start={event.start_at.isoformat()}")


@event_app.command("complete")
def event_complete(event_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        event = calendar.complete_event(store, ws.org_id, event_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Completed event: {event.event_id}")


@event_app.command("cancel")
def event_cancel(event_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        event = calendar.cancel_event(store, ws.org_id, event_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Cancelled event: {event.event_id}")


@reminder_app.command("task")
def reminder_task(
    task_id: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
    due: str = typer.Option(..., "--due", help="ISO 8601 due time."),
    offset: int = typer.Option(-60, "--offset"),
    timezone: str | None = typer.Option(None, "--tz"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        reminder = reminders.schedule_task_reminder(
            store,
            ws.org_id,
            user,
            task_id,
            rules.parse_datetime(due, "due"),
            clock,
            offset,
            timezone,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Reminder {reminder.reminder_id} at {reminder.remind_at.isoformat()}")


@reminder_app.command("due")
def reminder_due(
    user: str = typer.Option(..., "--user"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    _echo_reminders(reminders.due_reminders_for_user(store, ws.org_id, user, limit))


@reminder_app.command("missed")
def reminder_missed(
    user: str = typer.Option(..., "--user"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    _echo_reminders(reminders.missed_reminders_for_user(store, ws.org_id, user, limit))


@reminder_app.command("ack")
def reminder_ack(
    reminder_id: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    try:
        reminder = reminders.mark_delivered(store, ws.org_id, user, reminder_id, clock)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Delivered: {reminder.reminder_id}")


@scan_app.command("once")
def scan_once(
    events: bool = typer.Option(
        True, "--events/--no-events", help="Write domain events to the workspace log."
    ),
) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    result = run_sweep(store, clock, ws.scanner, events=_event_logger(ws, enabled=events))
    typer.echo(f"reminders={result.reminders} missed_events={result.missed_events}")
    if not result.ok:
        for error in result.errors:
            typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1)


@scan_app.command("run")
def scan_run(
    interval: float | None = typer.Option(None, "--interval", help="Seconds between sweeps."),
    events: bool = typer.Option(
        True, "--events/--no-events", help="Write domain events to the workspace log."
    ),
) -> None:
    """Sweep continuously until interrupted."""
    ws = _load_workspace()
    settings = ws.scanner
    if interval is not None:
        if interval <= 0:
            raise typer.BadParameter("--interval must be positive.")
        settings = replace(settings, interval_seconds=interval)
    scheduler = ReminderScheduler(
        open_store(ws.store), clock, settings, events=_event_logger(ws, enabled=events)
    )
    scheduler.start()
    typer.echo(f"Scanner running every {settings.interval_seconds}s. Ctrl+C to stop.")
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        typer.echo("Stopping scanner.")
    finally:
        scheduler.stop()


@export_app.command("excel")
def export_excel(out: str = typer.Option(..., "--out")) -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    exports.export_excel(store, ws.org_id, Path(out))
    typer.echo(f"Exported Excel to {out}")


@app.command("snapshot")
def snapshot() -> None:
    ws = _load_workspace()
    store = open_store(ws.store)
    snapshot_dir = Path("data") / "snapshots" / today_iso()
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    if ws.store.sqlite_path is not None and ws.store.sqlite_path.exists():
        shutil.copy2(ws.store.sqlite_path, snapshot_dir / "local.sqlite")
    exports.export_csv_tables(store, ws.org_id, snapshot_dir)
    typer.echo(f"Snapshot created at {snapshot_dir}")


def _echo_reminders(items) -> None:
    if not items:
        typer.echo("No reminders.")
        return
    for reminder in items:
        typer.echo(
            f"{reminder.reminder_id} | {reminder.target_type}:{reminder.target_id} "
            f"| {reminder.remind_at.isoformat()} | {reminder.status}"
        )


def _load_workspace():
    try:
        return load_workspace()
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _exit_with_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _event_logger(ws, enabled: bool) -> EventLogger:
    return EventLogger(path=ws.path / "events.ndjson", workspace=ws.name, enabled=enabled)


if __name__ == "__main__":
    app()
