"""Build the sqlite schema from ``resources/schema/canonical.yaml``.

Tables are created idempotently; uniqueness and enum membership are enforced
by the database so concurrent writers cannot break the dedup keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

SQL_TYPES = {
    "uuid": "TEXT",
    "text": "TEXT",
    "number": "REAL",
    "integer": "INTEGER",
    "bool": "INTEGER",
    "datetime": "TEXT",
    "enum": "TEXT",
    "json": "TEXT",
}


class SchemaError(RuntimeError):
    pass


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    sql_type: str
    required: bool = False
    enum_values: tuple[str, ...] = ()
    ref: tuple[str, str] | None = None


@dataclass(frozen=True)
class TableSpec:
    name: str
    primary_key: str
    columns: list[ColumnSpec]
    unique: list[list[str]] = field(default_factory=list)
    indexes: list[list[str]] = field(default_factory=list)


@dataclass(frozen=True)
class Schema:
    version: int
    tables: dict[str, TableSpec]


def load_schema(schema_path: Path) -> Schema:
    data = yaml.safe_load(Path(schema_path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise SchemaError("Schema file must be a mapping.")
    enums = data.get("enums") or {}
    raw_tables = data.get("tables") or {}
    if not isinstance(raw_tables, dict):
        raise SchemaError("Schema tables must be a mapping.")
    tables = {name: _parse_table(name, spec, enums) for name, spec in raw_tables.items()}
    return Schema(version=int(data.get("version", 1)), tables=tables)


def apply_schema(conn, schema_path: Path) -> None:
    schema = load_schema(schema_path)
    conn.execute(
        "CREATE TABLE IF NOT EXISTS __schema_meta "
        "(version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    row = conn.execute("SELECT MAX(version) FROM __schema_meta").fetchone()
    if row and row[0] is not None and row[0] > schema.version:
        raise SchemaError(
            f"Database schema version {row[0]} is newer than {schema_path} ({schema.version})."
        )
    for table in schema.tables.values():
        conn.execute(table_ddl(table))
        for statement in index_ddl(table):
            conn.execute(statement)
    conn.execute(
        "INSERT OR REPLACE INTO __schema_meta (version, applied_at) VALUES (?, datetime('now'))",
        (schema.version,),
    )


def table_ddl(table: TableSpec) -> str:
    parts = [_column_ddl(column, table.primary_key) for column in table.columns]
    parts.extend(f"UNIQUE ({', '.join(cols)})" for cols in table.unique)
    parts.extend(
        f"FOREIGN KEY ({column.name}) REFERENCES {column.ref[0]}({column.ref[1]})"
        for column in table.columns
        if column.ref
    )
    return f"CREATE TABLE IF NOT EXISTS {table.name} ({', '.join(parts)});"


def index_ddl(table: TableSpec) -> list[str]:
    return [
        f"CREATE INDEX IF NOT EXISTS idx_{table.name}_{'_'.join(cols)} "
        f"ON {table.name} ({', '.join(cols)});"
        for cols in table.indexes
    ]


def _column_ddl(column: ColumnSpec, primary_key: str) -> str:
    ddl = f"{column.name} {column.sql_type}"
    if column.required:
        ddl += " NOT NULL"
    if column.name == primary_key:
        ddl += " PRIMARY KEY"
    if column.enum_values:
        allowed = ", ".join(f"'{value}'" for value in column.enum_values)
        ddl += f" CHECK ({column.name} IN ({allowed}))"
    return ddl


def _parse_table(name: str, spec: Any, enums: dict[str, list[str]]) -> TableSpec:
    if not isinstance(spec, dict) or not isinstance(spec.get("fields"), dict):
        raise SchemaError(f"Table {name} fields must be a mapping.")
    primary_key = spec.get("primary_key")
    if primary_key not in spec["fields"]:
        raise SchemaError(f"Table {name} primary_key must name one of its fields.")
    columns = [
        _parse_column(name, column, col_spec, enums)
        for column, col_spec in spec["fields"].items()
    ]
    known = {column.name for column in columns}
    return TableSpec(
        name=name,
        primary_key=primary_key,
        columns=columns,
        unique=_column_groups(name, "unique", spec.get("unique"), known),
        indexes=_column_groups(name, "indexes", spec.get("indexes"), known),
    )


def _parse_column(table: str, name: str, spec: Any, enums: dict[str, list[str]]) -> ColumnSpec:
    if not isinstance(spec, dict):
        raise SchemaError(f"{table}.{name} must be a mapping.")
    field_type = spec.get("type")
    if field_type not in SQL_TYPES:
        raise SchemaError(f"Unknown field type {field_type} for {table}.{name}.")
    enum_values: tuple[str, ...] = ()
    if field_type == "enum":
        values = enums.get(spec.get("enum", ""))
        if not values:
            raise SchemaError(f"{table}.{name} references an unknown enum.")
        enum_values = tuple(values)
    ref = None
    if spec.get("ref"):
        ref_table, _, ref_field = str(spec["ref"]).partition(".")
        if not ref_field:
            raise SchemaError(f"{table}.{name} ref must look like table.field.")
        ref = (ref_table, ref_field)
    return ColumnSpec(
        name=name,
        sql_type=SQL_TYPES[field_type],
        required=bool(spec.get("required", False)),
        enum_values=enum_values,
        ref=ref,
    )


def _column_groups(table: str, key: str, groups: Any, known: set[str]) -> list[list[str]]:
    if groups is None:
        return []
    result = []
    for group in groups:
        if not isinstance(group, list) or not group:
            raise SchemaError(f"Table {table} {key} entries must be non-empty lists.")
        missing = set(group) - known
        if missing:
            raise SchemaError(f"Table {table} {key} names unknown fields: {sorted(missing)}")
        result.append(group)
    return result
