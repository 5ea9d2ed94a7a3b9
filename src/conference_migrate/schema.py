"""conference_migrate.schema

Explicit column schemas for the legacy dump tables.

Responsibilities:
  - Load and validate the YAML column map (config/legacy_schema.yml)
  - Decode a RawRow into a DecodedRow keyed by target field name
  - Apply the arity policy when a row's token count does not match

Usage:
    from pathlib import Path
    from conference_migrate.schema import decode_row, load_table_schemas

    schemas = load_table_schemas(Path("config/legacy_schema.yml"))
    row = decode_row(schemas["hospital"], ["H001", "A", "Test Hospital", "Z01", "Bangkok"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from conference_migrate.normalize import to_date, to_int, to_str

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_TABLES = ("hospital", "member", "attendee", "finance")

ARITY_POLICIES = ("reject", "pad")

# Target fields each loader writes.  Every non-skip column in the YAML
# must map to one of these.
TARGET_FIELDS: dict[str, frozenset[str]] = {
    "hospital": frozenset({"code", "hospital_type", "name", "zone_code", "province"}),
    "member": frozenset({
        "id", "email", "password", "hospital_code", "member_type", "created_at",
    }),
    "attendee": frozenset({
        "id", "hospital_code", "reg_type_id", "prefix", "first_name", "last_name",
        "position_code", "position_other", "gp_code", "gp_other", "level_code",
        "phone", "email", "line", "food_type", "vehicle_type",
        "air_date1", "airline1", "flight_no1", "air_date2", "airline2", "flight_no2",
        "air_shuttle",
        "bus_date1", "bus_line1", "bus_date2", "bus_line2", "bus_shuttle",
        "train_date1", "train_line1", "train_date2", "train_line2", "train_shuttle",
        "hotel_id", "hotel_other", "created_by", "created_at", "status",
        "cancelled_by", "bus_to_meet",
    }),
    "finance": frozenset({
        "id", "member_id", "attendee_ids", "file_name", "status", "created_at",
        "confirmed_by", "confirmed_at", "paid_date",
    }),
}


def _raw(value: str | None) -> str | None:
    return value


DECODERS: dict[str, Callable[[str | None], Any]] = {
    "str": to_str,
    "int": to_int,
    "date": to_date,
    "raw": _raw,
}

SKIP_KIND = "skip"
VALID_KINDS = frozenset(DECODERS) | {SKIP_KIND}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SchemaValidationError(ValueError):
    """Raised when the YAML column map fails validation."""


class ArityError(ValueError):
    """Raised when a RawRow's token count differs from its table schema."""

    def __init__(self, table: str, expected: int, actual: int) -> None:
        super().__init__(
            f"arity_mismatch: table={table} expected={expected} actual={actual}"
        )
        self.table = table
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Schema dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnSpec:
    name: str
    field: str | None
    kind: str


@dataclass
class TableSchema:
    """Ordered legacy columns for one dump table."""

    table: str
    columns: list[ColumnSpec] = field(default_factory=list)

    @property
    def arity(self) -> int:
        return len(self.columns)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_table_schemas(yaml_path: Path) -> dict[str, TableSchema]:
    """Load and validate the legacy column map.

    Raises:
        SchemaValidationError: If a table or column entry is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_schema_data(data)
    schemas: dict[str, TableSchema] = {}
    for table, spec in data["tables"].items():
        columns = [
            ColumnSpec(
                name=str(col["name"]),
                field=col.get("field"),
                kind=str(col["kind"]),
            )
            for col in spec["columns"]
        ]
        schemas[table] = TableSchema(table=table, columns=columns)
    return schemas


def validate_schema_data(data: Any) -> None:
    """Raise SchemaValidationError if data does not describe every required table."""
    if not isinstance(data, dict) or not isinstance(data.get("tables"), dict):
        raise SchemaValidationError("schema file must contain a 'tables' mapping")

    tables = data["tables"]
    missing = [t for t in REQUIRED_TABLES if t not in tables]
    if missing:
        raise SchemaValidationError(f"Missing table definitions: {missing}")

    for table, spec in tables.items():
        columns = (spec or {}).get("columns")
        if not isinstance(columns, list) or not columns:
            raise SchemaValidationError(f"{table}: 'columns' must be a non-empty list")

        seen_names: set[str] = set()
        seen_fields: set[str] = set()
        allowed = TARGET_FIELDS.get(table)
        for idx, col in enumerate(columns):
            if not isinstance(col, dict) or "name" not in col or "kind" not in col:
                raise SchemaValidationError(
                    f"{table}: column #{idx} needs 'name' and 'kind'"
                )
            name = str(col["name"])
            kind = col["kind"]
            if name in seen_names:
                raise SchemaValidationError(f"{table}: duplicate column name {name!r}")
            seen_names.add(name)
            if kind not in VALID_KINDS:
                raise SchemaValidationError(
                    f"{table}.{name}: kind {kind!r} not in {sorted(VALID_KINDS)}"
                )
            if kind == SKIP_KIND:
                continue
            target = col.get("field")
            if not target:
                raise SchemaValidationError(f"{table}.{name}: 'field' is required")
            if target in seen_fields:
                raise SchemaValidationError(f"{table}: field {target!r} mapped twice")
            seen_fields.add(target)
            if allowed is not None and target not in allowed:
                raise SchemaValidationError(
                    f"{table}.{name}: unknown target field {target!r}"
                )


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_row(
    schema: TableSchema,
    raw_row: list[str],
    arity_policy: str = "reject",
) -> dict[str, Any]:
    """Decode a RawRow into a dict of target field → typed value.

    Policies:
      reject - raise ArityError when the token count differs
      pad    - missing trailing tokens decode as None, surplus tokens dropped
    """
    if len(raw_row) != schema.arity:
        if arity_policy == "reject":
            raise ArityError(schema.table, schema.arity, len(raw_row))
        if arity_policy != "pad":
            raise ValueError(f"unknown arity policy {arity_policy!r}")

    decoded: dict[str, Any] = {}
    for idx, col in enumerate(schema.columns):
        if col.kind == SKIP_KIND:
            continue
        token = raw_row[idx] if idx < len(raw_row) else None
        decoded[col.field] = DECODERS[col.kind](token)
    return decoded
