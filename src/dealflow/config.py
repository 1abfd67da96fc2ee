from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"

STORE_BACKENDS = ("sqlite", "memory")

REMINDER_GRACE_ENV = "REMINDER_GRACE_MINUTES"
EVENT_GRACE_ENV = "EVENT_MISSED_GRACE_MINUTES"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "sqlite"
    sqlite_path: Path | None = None


@dataclass(frozen=True)
class ScannerSettings:
    interval_seconds: float = 60
    reminder_grace_minutes: int = 60
    event_grace_minutes: int = 60
    batch_limit: int = 100

    @property
    def reminder_grace(self) -> timedelta:
        return timedelta(minutes=self.reminder_grace_minutes)

    @property
    def event_grace(self) -> timedelta:
        return timedelta(minutes=self.event_grace_minutes)


@dataclass(frozen=True)
class UnderwritingDefaults:
    investor_multiplier: float = 0.70
    assignment_fee: float = 10000.0


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    org_id: str
    store: StoreConfig
    path: Path
    scanner: ScannerSettings = field(default_factory=ScannerSettings)
    underwriting: UnderwritingDefaults = field(default_factory=UnderwritingDefaults)


class WorkspaceError(RuntimeError):
    pass


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `dealflow workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    config_path = workspace_config_path(name)
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    return load_workspace_file(config_path, name=name)


def load_workspace_file(config_path: Path, name: str | None = None) -> WorkspaceConfig:
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise WorkspaceError(f"Invalid YAML in workspace config {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise WorkspaceError(f"Workspace config must be a mapping: {config_path}")
    org_id = data.get("org_id") or "default"
    if not isinstance(org_id, str):
        raise WorkspaceError("Workspace org_id must be a string.")
    return WorkspaceConfig(
        name=name or data.get("workspace") or config_path.parent.name,
        org_id=org_id,
        store=_parse_store(data.get("store"), config_path),
        path=config_path.parent,
        scanner=_parse_scanner(data.get("scanner")),
        underwriting=_parse_underwriting(data.get("underwriting")),
    )


def write_workspace_config(name: str, org_id: str = "default", backend: str = "sqlite") -> Path:
    if backend not in STORE_BACKENDS:
        raise WorkspaceError(f"store.backend must be one of: {', '.join(STORE_BACKENDS)}")
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    defaults = ScannerSettings()
    underwriting = UnderwritingDefaults()
    config = {
        "workspace": name,
        "org_id": org_id,
        "store": {"backend": backend, "sqlite_path": "./local.sqlite"},
        "scanner": {
            "interval_seconds": defaults.interval_seconds,
            "reminder_grace_minutes": defaults.reminder_grace_minutes,
            "event_grace_minutes": defaults.event_grace_minutes,
            "batch_limit": defaults.batch_limit,
        },
        "underwriting": {
            "investor_multiplier": underwriting.investor_multiplier,
            "assignment_fee": underwriting.assignment_fee,
        },
    }
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def _parse_store(store_data: Any, config_path: Path) -> StoreConfig:
    if not isinstance(store_data, dict):
        raise WorkspaceError("Invalid workspace store configuration.")
    backend = store_data.get("backend") or "sqlite"
    if backend not in STORE_BACKENDS:
        raise WorkspaceError(f"store.backend must be one of: {', '.join(STORE_BACKENDS)}")
    if backend == "memory":
        return StoreConfig(backend=backend)
    sqlite_path_raw = store_data.get("sqlite_path")
    if not sqlite_path_raw:
        raise WorkspaceError("Workspace store.sqlite_path is required.")
    sqlite_path = _resolve_sqlite_path(sqlite_path_raw, config_path)
    if sqlite_path is None:
        raise WorkspaceError("Workspace store.sqlite_path must be a string.")
    return StoreConfig(backend=backend, sqlite_path=sqlite_path)


def _resolve_sqlite_path(sqlite_path_raw: Any, config_path: Path) -> Path | None:
    if not isinstance(sqlite_path_raw, str):
        return None
    raw_path = Path(sqlite_path_raw)
    if raw_path.is_absolute():
        return raw_path
    workspace_dir = config_path.parent
    if raw_path.parts and raw_path.parts[0] == WORKSPACES_DIR.name:
        # Already relative to the repo root.
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()


def _parse_scanner(scanner_data: Any) -> ScannerSettings:
    if scanner_data is None:
        scanner_data = {}
    if not isinstance(scanner_data, dict):
        raise WorkspaceError("Workspace scanner must be a mapping.")
    defaults = ScannerSettings()
    interval = _positive_number(
        scanner_data.get("interval_seconds", defaults.interval_seconds), "scanner.interval_seconds"
    )
    reminder_grace = _non_negative_int(
        scanner_data.get("reminder_grace_minutes", defaults.reminder_grace_minutes),
        "scanner.reminder_grace_minutes",
    )
    event_grace = _non_negative_int(
        scanner_data.get("event_grace_minutes", defaults.event_grace_minutes),
        "scanner.event_grace_minutes",
    )
    batch_limit = _non_negative_int(
        scanner_data.get("batch_limit", defaults.batch_limit), "scanner.batch_limit"
    )
    return ScannerSettings(
        interval_seconds=interval,
        reminder_grace_minutes=_env_minutes(REMINDER_GRACE_ENV, reminder_grace),
        event_grace_minutes=_env_minutes(EVENT_GRACE_ENV, event_grace),
        batch_limit=batch_limit,
    )


def _parse_underwriting(data: Any) -> UnderwritingDefaults:
    if data is None:
        return UnderwritingDefaults()
    if not isinstance(data, dict):
        raise WorkspaceError("Workspace underwriting must be a mapping.")
    defaults = UnderwritingDefaults()
    multiplier = data.get("investor_multiplier", defaults.investor_multiplier)
    fee = data.get("assignment_fee", defaults.assignment_fee)
    if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
        raise WorkspaceError("underwriting.investor_multiplier must be a number.")
    if not 0 <= multiplier <= 1:
        raise WorkspaceError("underwriting.investor_multiplier must be between 0 and 1.")
    if isinstance(fee, bool) or not isinstance(fee, (int, float)) or fee < 0:
        raise WorkspaceError("underwriting.assignment_fee must be a non-negative number.")
    return UnderwritingDefaults(investor_multiplier=float(multiplier), assignment_fee=float(fee))


def _env_minutes(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _positive_number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise WorkspaceError(f"{field_name} must be a positive number.")
    return value


def _non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise WorkspaceError(f"{field_name} must be a non-negative integer.")
    return value
