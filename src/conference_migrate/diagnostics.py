"""conference_migrate.diagnostics

Post-migration checks run by the ``verify`` and ``find_missing`` modes.

verify        - table counts plus a few sample rows per entity
find_missing  - attendee rows present in the dump but absent from the
                attendee table, grouped by whether their hospital code
                exists in the hospital table
"""

from __future__ import annotations

from dataclasses import dataclass, field

import psycopg

from conference_migrate.schema import TableSchema, decode_row
from conference_migrate.shared import fetch_hospital_codes, table_counts
from conference_migrate.sql_dump import parse_insert_values

ADMIN_MEMBER_TYPE = 99


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------

def build_verification_report(conn: psycopg.Connection) -> str:
    lines = ["=== Data Verification ===", "", "Table Counts:", "-------------"]
    for label, count in table_counts(conn).items():
        lines.append(f"{label:<12}: {'n/a' if count is None else count}")

    lines += ["", "=== Sample Data ===", "", "Sample Zones:"]
    for code, name in conn.execute(
        "SELECT code, name FROM zone ORDER BY code LIMIT 3"
    ).fetchall():
        lines.append(f"  - {code}: {name}")

    lines += ["", "Sample Hospitals:"]
    for code, name, zone_name in conn.execute(
        """
        SELECT h.code, h.name, z.name
        FROM hospital h
        LEFT JOIN zone z ON z.code = h.zone_code
        ORDER BY h.code
        LIMIT 5
        """
    ).fetchall():
        lines.append(f"  - {code}: {name} ({zone_name or 'N/A'})")

    lines += ["", "Sample Hotels:"]
    for hotel_id, name in conn.execute(
        "SELECT id, name FROM hotel ORDER BY id LIMIT 5"
    ).fetchall():
        lines.append(f"  - {hotel_id}: {name}")

    lines += ["", "Sample Members:"]
    for email, member_type, hospital_name in conn.execute(
        """
        SELECT m.email, m.member_type, h.name
        FROM member m
        LEFT JOIN hospital h ON h.code = m.hospital_code
        ORDER BY m.id
        LIMIT 3
        """
    ).fetchall():
        role = "Admin" if member_type == ADMIN_MEMBER_TYPE else "User"
        lines.append(f"  - {email} ({role}) - {hospital_name or 'N/A'}")

    lines += ["", "Sample Levels:"]
    for code, group, name in conn.execute(
        'SELECT code, "group", name FROM level ORDER BY code LIMIT 5'
    ).fetchall():
        lines.append(f"  - {code}: {group} - {name}")

    lines += ["", "=== Verification Complete ==="]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# find_missing
# ---------------------------------------------------------------------------

@dataclass
class MissingAttendee:
    id: int
    hospital_code: str | None
    reg_type_id: int | None
    prefix: str | None
    first_name: str | None
    last_name: str | None

    @property
    def display_name(self) -> str:
        return f"{self.prefix or ''}{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class MissingReport:
    missing: list[MissingAttendee] = field(default_factory=list)
    unknown_hospital: list[MissingAttendee] = field(default_factory=list)
    other_errors: list[MissingAttendee] = field(default_factory=list)

    @property
    def unknown_hospital_codes(self) -> list[str]:
        codes: list[str] = []
        for m in self.unknown_hospital:
            code = m.hospital_code or ""
            if code not in codes:
                codes.append(code)
        return codes


def find_missing_attendees(
    conn: psycopg.Connection,
    sql: str,
    schema: TableSchema,
) -> MissingReport:
    """Compare dump attendee ids against the attendee table."""
    migrated = {row[0] for row in conn.execute("SELECT id FROM attendee").fetchall()}
    hospital_codes = fetch_hospital_codes(conn)

    report = MissingReport()
    for raw in parse_insert_values(sql, "attendee"):
        row = decode_row(schema, raw, arity_policy="pad")
        attendee_id = row.get("id")
        if attendee_id is None or attendee_id in migrated:
            continue
        entry = MissingAttendee(
            id=attendee_id,
            hospital_code=row.get("hospital_code"),
            reg_type_id=row.get("reg_type_id"),
            prefix=row.get("prefix"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
        )
        report.missing.append(entry)
        if entry.hospital_code is not None and entry.hospital_code not in hospital_codes:
            report.unknown_hospital.append(entry)
        else:
            report.other_errors.append(entry)
    return report


def format_missing_report(report: MissingReport) -> str:
    lines = [
        f"=== Attendees not migrated ({len(report.missing)} rows) ===",
        "",
        "ID\t\tHospital\tType\tName",
        "-" * 61,
    ]
    for m in report.missing:
        lines.append(
            f"{m.id}\t\t{m.hospital_code or ''}\t\t{m.reg_type_id or ''}\t{m.display_name}"
        )

    lines += ["", "=== Reasons ==="]
    if report.unknown_hospital:
        lines.append(f"Hospital code not in hospital table ({len(report.unknown_hospital)} rows):")
        lines.append(", ".join(report.unknown_hospital_codes))
    if report.other_errors:
        lines.append(f"Hospital code exists, other error ({len(report.other_errors)} rows):")
        for m in report.other_errors:
            lines.append(f"  {m.id}: {m.hospital_code} - {m.display_name}")
    return "\n".join(lines)
