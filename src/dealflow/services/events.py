from __future__ import annotations

import json
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dealflow.services.utils import utc_now_iso


@dataclass
class EventLogger:
    """Append-only NDJSON log of domain events for one workspace."""

    path: Path
    workspace: str
    enabled: bool = True
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        event_type: str,
        entity_type: str,
        entity_id: str,
        org_id: str | None = None,
        changed_fields: Iterable[str] | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        payload = {
            "ts": utc_now_iso(),
            "workspace": self.workspace,
            "org_id": org_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "event_type": event_type,
            "changed_fields": list(changed_fields or []),
        }
        if details:
            payload["details"] = dict(details)
        line = json.dumps(payload, default=str) + "\n"
        # The scanner thread and the CLI may append concurrently.
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
