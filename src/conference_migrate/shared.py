"""conference_migrate.shared

Shared utilities used by the migration and diagnostic modes.
Includes RejectWriter, RunCounters, common DB helpers, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg

# Target tables whose rows are counted at the end of a run, in print order.
COUNTED_TABLES: tuple[tuple[str, str], ...] = (
    ("members", "member"),
    ("attendees", "attendee"),
    ("finances", "finance"),
    ("zones", "zone"),
    ("hospitals", "hospital"),
    ("levels", "level"),
    ("positions", "position"),
    ("reg_types", "reg_type"),
    ("airlines", "airline"),
    ("hotels", "hotel"),
)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected dump rows."""

    FIELDNAMES = ["table", "legacy_id", "raw_values", "_reject_reason"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, table: str, raw_row: list[str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.FIELDNAMES)
            self._writer.writeheader()
        self._writer.writerow({
            "table": table,
            "legacy_id": raw_row[0] if raw_row else "",
            "raw_values": json.dumps(raw_row, ensure_ascii=False),
            "_reject_reason": reason,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Parse phase
    dump_bytes: int = 0
    statements_matched: int = 0
    unbalanced_statements: int = 0
    arity_rejected: int = 0
    rows_rejected: int = 0
    # Master data
    master_rows_seeded: dict[str, int] = field(default_factory=dict)
    # Zone
    zone_seeded: bool = False
    # Hospital
    hospital_rows_read: int = 0
    hospitals_upserted: int = 0
    hospital_errors: int = 0
    # Member
    member_rows_read: int = 0
    members_inserted: int = 0
    members_skipped_duplicate: int = 0
    member_errors: int = 0
    member_skips: list[tuple[int | None, str]] = field(default_factory=list)
    # Attendee
    attendee_rows_read: int = 0
    attendees_inserted: int = 0
    attendee_created_by_nulled: int = 0
    attendee_duplicate_ids: int = 0
    attendee_errors: int = 0
    # Finance
    finance_rows_read: int = 0
    finances_inserted: int = 0
    finance_member_id_nulled: int = 0
    finance_errors: int = 0
    # Final state
    valid_member_ids: int = 0
    table_counts: dict[str, int | None] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def db_phase_errors(self) -> int:
        return (
            self.hospital_errors + self.member_errors
            + self.attendee_errors + self.finance_errors
        )

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k not in ("warnings", "member_skips")}
        d["db_phase_errors"] = self.db_phase_errors
        d["member_skips"] = [
            {"legacy_id": legacy_id, "email": email}
            for legacy_id, email in self.member_skips
        ]
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Shared DB helpers
# ---------------------------------------------------------------------------

def insert_row(
    conn: psycopg.Connection,
    table: str,
    values: dict[str, Any],
    defaulted: tuple[str, ...] = ("id", "created_at"),
) -> None:
    """INSERT one row; None in a ``defaulted`` column falls back to the column DEFAULT.

    ``table`` and the keys of ``values`` come from code constants and the
    validated column map, never from dump content.
    """
    columns = [c for c, v in values.items() if not (v is None and c in defaulted)]
    placeholders = ", ".join(["%s"] * len(columns))
    conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [values[c] for c in columns],
    )


def sync_id_sequence(conn: psycopg.Connection, table: str) -> None:
    """Advance a serial id sequence past the largest explicitly inserted id."""
    conn.execute(
        f"""
        SELECT setval(
          pg_get_serial_sequence('{table}', 'id'),
          COALESCE((SELECT MAX(id) FROM {table}), 0) + 1,
          false
        )
        """
    )


def fetch_member_ids(conn: psycopg.Connection) -> set[int]:
    rows = conn.execute("SELECT id FROM member").fetchall()
    return {row[0] for row in rows}


def fetch_hospital_codes(conn: psycopg.Connection) -> set[str]:
    rows = conn.execute("SELECT code FROM hospital").fetchall()
    return {row[0] for row in rows}


def count_rows(conn: psycopg.Connection, table: str) -> int | None:
    """Row count, or None when the table does not exist."""
    exists = conn.execute("SELECT to_regclass(%s)", (table,)).fetchone()
    if exists is None or exists[0] is None:
        return None
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def table_counts(conn: psycopg.Connection) -> dict[str, int | None]:
    return {label: count_rows(conn, table) for label, table in COUNTED_TABLES}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
