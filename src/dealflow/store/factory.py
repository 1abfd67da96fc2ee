from __future__ import annotations

from pathlib import Path

from dealflow.config import StoreConfig
from dealflow.store.base import DealflowStore
from dealflow.store.memory import MemoryStore
from dealflow.store.sqlite import SqliteStore


def open_store(config: StoreConfig, schema_path: Path | None = None) -> DealflowStore:
    """Build the configured store; sqlite gets ``schema_path`` applied when given."""
    if config.backend == "memory":
        return MemoryStore()
    if config.sqlite_path is None:
        raise ValueError("sqlite backend requires sqlite_path")
    store = SqliteStore(config.sqlite_path)
    if schema_path is not None:
        store.apply_schema(schema_path)
    return store
