"""conference_migrate.seed

Master-data seeding for the tables the legacy dump does not carry.

Responsibilities:
  - Load and validate the master-data file (config/master_data.yml)
  - Upsert zone, airline, level, reg_type, position and hotel rows by key
  - Advance serial sequences past explicitly seeded ids

Hospitals reference zones, so seeding must run before the hospital stage
on an empty database.  Re-running updates rows in place.

Usage:
    from pathlib import Path
    from conference_migrate.seed import load_master_data, seed_master_data

    data = load_master_data(Path("config/master_data.yml"))
    seed_master_data(conn, data, counters, run_id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import psycopg
import yaml
from psycopg import sql

from conference_migrate.schema import SchemaValidationError
from conference_migrate.shared import RunCounters, sync_id_sequence

# Seed order; zone first because hospital.zone_code references it.
MASTER_TABLES: dict[str, frozenset[str]] = {
    "zone": frozenset({"code", "name"}),
    "airline": frozenset({"id", "name", "status"}),
    "level": frozenset({"code", "group", "name", "status"}),
    "reg_type": frozenset({"id", "name"}),
    "position": frozenset({"code", "name"}),
    "hotel": frozenset({"id", "name", "phone", "website", "map_url", "bus_flag", "status"}),
}

# Tables whose key is a serial id.
SERIAL_TABLES = ("airline", "reg_type", "hotel")


@dataclass
class MasterTable:
    table: str
    key: str
    rows: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_master_data(yaml_path: Path) -> list[MasterTable]:
    """Load and validate the master-data file, returned in seed order.

    Raises:
        SchemaValidationError: If a table, key or row is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_master_data(data)
    tables = data["tables"]
    return [
        MasterTable(table=t, key=tables[t]["key"], rows=list(tables[t]["rows"]))
        for t in MASTER_TABLES
        if t in tables
    ]


def validate_master_data(data: Any) -> None:
    if not isinstance(data, dict) or not isinstance(data.get("tables"), dict):
        raise SchemaValidationError("master data file must contain a 'tables' mapping")

    for table, entry in data["tables"].items():
        allowed = MASTER_TABLES.get(table)
        if allowed is None:
            raise SchemaValidationError(f"{table}: not a master table")
        if not isinstance(entry, dict):
            raise SchemaValidationError(f"{table}: expected a mapping with 'key' and 'rows'")
        key = entry.get("key")
        if key not in allowed:
            raise SchemaValidationError(f"{table}: key {key!r} is not a column")
        rows = entry.get("rows")
        if not isinstance(rows, list):
            raise SchemaValidationError(f"{table}: 'rows' must be a list")
        seen: set[Any] = set()
        for idx, row in enumerate(rows):
            if not isinstance(row, dict) or row.get(key) is None:
                raise SchemaValidationError(f"{table}: row #{idx} is missing {key!r}")
            unknown = set(row) - allowed
            if unknown:
                raise SchemaValidationError(
                    f"{table}: row #{idx} has unknown columns {sorted(unknown)}"
                )
            if row[key] in seen:
                raise SchemaValidationError(f"{table}: duplicate {key} {row[key]!r}")
            seen.add(row[key])


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

def _upsert_query(table: str, key: str, columns: list[str]) -> sql.Composed:
    updates = [c for c in columns if c != key]
    if updates:
        conflict = sql.SQL("DO UPDATE SET {}").format(
            sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                for c in updates
            )
        )
    else:
        conflict = sql.SQL("DO NOTHING")
    return sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join([sql.Placeholder()] * len(columns)),
        sql.Identifier(key),
        conflict,
    )


def seed_master_data(
    conn: psycopg.Connection,
    tables: list[MasterTable],
    counters: RunCounters,
    run_id: str,
    dry_run: bool = False,
) -> None:
    """Upsert every master row.  Errors propagate; the caller decides on rollback.

    Sequences are left alone when dry_run is set since setval is not
    rolled back with the transaction.
    """
    click.echo(f"[{run_id}] --- Seeding Master Data ---")
    for master in tables:
        for row in master.rows:
            columns = list(row)
            conn.execute(
                _upsert_query(master.table, master.key, columns),
                [row[c] for c in columns],
            )
        if master.table in SERIAL_TABLES and master.rows and not dry_run:
            sync_id_sequence(conn, master.table)
        counters.master_rows_seeded[master.table] = len(master.rows)
        click.echo(f"[{run_id}] Seeded {len(master.rows)} {master.table} rows")
