"""conference_migrate.migrate

Row reconciliation and load engine for the legacy conference dump.

Load order is fixed: zone → hospital → member → attendee → finance.
Attendee and finance member references are repaired against the set of
member ids that survived the member load, so that set is read only
after the member stage has finished (including email dedup).

Per-table behavior:
  zone      - single C01 row, INSERT ... ON CONFLICT DO NOTHING
  hospital  - upsert by code; re-running updates in place
  member    - DELETE all, then insert; duplicate email → skipped (first wins)
  attendee  - DELETE all, then insert; dangling created_by → NULL
  finance   - DELETE all, then insert; dangling member_id → NULL

Every row runs under its own SAVEPOINT so a failed row rolls back alone
and the loop continues.  Each stage is committed when it finishes; there
is no atomicity across stages.
"""

from __future__ import annotations

from typing import Any

import click
import psycopg
import psycopg.errors

from conference_migrate.normalize import truncate_message
from conference_migrate.schema import ArityError, TableSchema, decode_row
from conference_migrate.seed import MasterTable, seed_master_data
from conference_migrate.shared import (
    RejectWriter,
    RunCounters,
    fetch_member_ids,
    insert_row,
    sync_id_sequence,
    table_counts,
)
from conference_migrate.sql_dump import RawRow, ScanStats, parse_insert_values

ZONE_CODE = "C01"
ZONE_NAME = "ส่วนกลาง"
DEFAULT_BATCH_SIZE = 100
DEFAULT_MEMBER_TYPE = 1
DEFAULT_STATUS = 1

_ATTENDEE_FIELDS = (
    "id", "hospital_code", "reg_type_id", "prefix", "first_name", "last_name",
    "position_code", "position_other", "gp_code", "gp_other", "level_code",
    "phone", "email", "line", "food_type", "vehicle_type",
    "air_date1", "airline1", "flight_no1", "air_date2", "airline2", "flight_no2",
    "air_shuttle",
    "bus_date1", "bus_line1", "bus_date2", "bus_line2", "bus_shuttle",
    "train_date1", "train_line1", "train_date2", "train_line2", "train_shuttle",
    "hotel_id", "hotel_other", "created_by", "created_at", "status",
    "cancelled_by", "bus_to_meet",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def repair_member_ref(member_id: int | None, valid_ids: set[int]) -> tuple[int | None, bool]:
    """Return (member_id or None, nulled).

    nulled is True only when a non-zero reference was dropped because the
    member did not survive the member load.
    """
    if not member_id:
        return None, False
    if member_id in valid_ids:
        return member_id, False
    return None, True


def _decode(
    schema: TableSchema,
    raw: RawRow,
    counters: RunCounters,
    rejects: RejectWriter,
    arity_policy: str,
) -> dict[str, Any] | None:
    try:
        return decode_row(schema, raw, arity_policy)
    except ArityError as e:
        counters.arity_rejected += 1
        counters.rows_rejected += 1
        rejects.write(schema.table, raw, str(e))
        return None


def _row_failed(
    conn: psycopg.Connection,
    sp_name: str,
    table: str,
    raw: RawRow,
    exc: Exception,
    counters: RunCounters,
    rejects: RejectWriter,
) -> None:
    conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
    counters.rows_rejected += 1
    rejects.write(table, raw, f"db_error: {truncate_message(exc)}")


# ---------------------------------------------------------------------------
# Zone
# ---------------------------------------------------------------------------

def seed_zone(conn: psycopg.Connection, counters: RunCounters, run_id: str) -> None:
    """Ensure the central-government zone exists; safe to call repeatedly."""
    click.echo(f"[{run_id}] --- Adding Zone {ZONE_CODE} ---")
    conn.execute("SAVEPOINT zone_seed")
    try:
        inserted = conn.execute(
            """
            INSERT INTO zone (code, name)
            VALUES (%s, %s)
            ON CONFLICT (code) DO NOTHING
            RETURNING code
            """,
            (ZONE_CODE, ZONE_NAME),
        ).fetchone()
        conn.execute("RELEASE SAVEPOINT zone_seed")
    except psycopg.Error:
        conn.execute("ROLLBACK TO SAVEPOINT zone_seed")
        inserted = None
    counters.zone_seeded = inserted is not None
    if inserted:
        click.echo(f"[{run_id}] Zone {ZONE_CODE} added")
    else:
        click.echo(f"[{run_id}] Zone {ZONE_CODE} already exists")


# ---------------------------------------------------------------------------
# Hospital
# ---------------------------------------------------------------------------

def load_hospitals(
    conn: psycopg.Connection,
    rows: list[RawRow],
    schema: TableSchema,
    counters: RunCounters,
    rejects: RejectWriter,
    run_id: str,
    arity_policy: str = "reject",
) -> None:
    counters.hospital_rows_read = len(rows)
    for idx, raw in enumerate(rows):
        row = _decode(schema, raw, counters, rejects, arity_policy)
        if row is None:
            continue
        code = row.get("code") or ""
        sp_name = f"hospital_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            conn.execute(
                """
                INSERT INTO hospital (code, hospital_type, name, province, zone_code)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (code) DO UPDATE SET
                  hospital_type = EXCLUDED.hospital_type,
                  name = EXCLUDED.name,
                  province = EXCLUDED.province,
                  zone_code = EXCLUDED.zone_code
                """,
                (
                    code,
                    row.get("hospital_type"),
                    row.get("name") or "",
                    row.get("province"),
                    row.get("zone_code"),
                ),
            )
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            counters.hospitals_upserted += 1
        except psycopg.Error as e:
            _row_failed(conn, sp_name, "hospital", raw, e, counters, rejects)
            counters.hospital_errors += 1
            click.echo(f"[{run_id}] Error hospital {code}: {truncate_message(e, 50)}", err=True)


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

def _insert_member(conn: psycopg.Connection, row: dict[str, Any], email: str) -> bool:
    """Insert one member unless the email is already taken.  True if inserted."""
    existing = conn.execute(
        "SELECT id FROM member WHERE email = %s", (email,)
    ).fetchone()
    if existing:
        return False
    insert_row(conn, "member", {
        "id": row.get("id") or None,
        "email": email,
        "password": row.get("password") or "",
        "hospital_code": row.get("hospital_code"),
        "member_type": row.get("member_type") or DEFAULT_MEMBER_TYPE,
        "created_at": row.get("created_at"),
    })
    return True


def load_members(
    conn: psycopg.Connection,
    rows: list[RawRow],
    schema: TableSchema,
    counters: RunCounters,
    rejects: RejectWriter,
    run_id: str,
    arity_policy: str = "reject",
    sync_sequence: bool = True,
) -> None:
    """Reload member from scratch; duplicate emails keep the first row in dump order."""
    counters.member_rows_read = len(rows)
    conn.execute("DELETE FROM member")

    for idx, raw in enumerate(rows):
        row = _decode(schema, raw, counters, rejects, arity_policy)
        if row is None:
            continue
        legacy_id = row.get("id")
        email = row.get("email") or f"member_{legacy_id}@temp.com"
        sp_name = f"member_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            inserted = _insert_member(conn, row, email)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except psycopg.Error as e:
            _row_failed(conn, sp_name, "member", raw, e, counters, rejects)
            counters.member_errors += 1
            click.echo(f"[{run_id}] Error member {legacy_id}: {truncate_message(e)}", err=True)
            continue

        if inserted:
            counters.members_inserted += 1
        else:
            counters.members_skipped_duplicate += 1
            counters.member_skips.append((legacy_id, email))
            rejects.write("member", raw, "duplicate_email")

    if sync_sequence:
        sync_id_sequence(conn, "member")


# ---------------------------------------------------------------------------
# Attendee
# ---------------------------------------------------------------------------

def load_attendees(
    conn: psycopg.Connection,
    rows: list[RawRow],
    schema: TableSchema,
    valid_member_ids: set[int],
    counters: RunCounters,
    rejects: RejectWriter,
    run_id: str,
    arity_policy: str = "reject",
    batch_size: int = DEFAULT_BATCH_SIZE,
    sync_sequence: bool = True,
) -> None:
    """Reload attendee from scratch.

    Unique violations are expected (legacy id collisions) and are counted
    without being echoed.  batch_size only sets the progress cadence.
    """
    counters.attendee_rows_read = len(rows)
    conn.execute("DELETE FROM attendee")

    for start in range(0, len(rows), batch_size):
        for offset, raw in enumerate(rows[start:start + batch_size]):
            row = _decode(schema, raw, counters, rejects, arity_policy)
            if row is None:
                continue
            created_by, nulled = repair_member_ref(row.get("created_by"), valid_member_ids)
            if nulled:
                counters.attendee_created_by_nulled += 1

            values = {f: row.get(f) for f in _ATTENDEE_FIELDS}
            values["id"] = row.get("id") or None
            values["created_by"] = created_by
            values["status"] = row.get("status") or DEFAULT_STATUS

            sp_name = f"attendee_{start + offset}"
            conn.execute(f"SAVEPOINT {sp_name}")
            try:
                insert_row(conn, "attendee", values)
                conn.execute(f"RELEASE SAVEPOINT {sp_name}")
                counters.attendees_inserted += 1
            except psycopg.errors.UniqueViolation as e:
                _row_failed(conn, sp_name, "attendee", raw, e, counters, rejects)
                counters.attendee_duplicate_ids += 1
            except psycopg.Error as e:
                _row_failed(conn, sp_name, "attendee", raw, e, counters, rejects)
                counters.attendee_errors += 1
                click.echo(
                    f"[{run_id}] Error attendee {row.get('id')}: {truncate_message(e, 100)}",
                    err=True,
                )

        click.echo(f"\r[{run_id}] Migrated {counters.attendees_inserted} attendees...", nl=False)
    click.echo("")

    if sync_sequence:
        sync_id_sequence(conn, "attendee")


# ---------------------------------------------------------------------------
# Finance
# ---------------------------------------------------------------------------

def load_finances(
    conn: psycopg.Connection,
    rows: list[RawRow],
    schema: TableSchema,
    valid_member_ids: set[int],
    counters: RunCounters,
    rejects: RejectWriter,
    run_id: str,
    arity_policy: str = "reject",
    sync_sequence: bool = True,
) -> None:
    counters.finance_rows_read = len(rows)
    conn.execute("DELETE FROM finance")

    for idx, raw in enumerate(rows):
        row = _decode(schema, raw, counters, rejects, arity_policy)
        if row is None:
            continue
        member_id, nulled = repair_member_ref(row.get("member_id"), valid_member_ids)
        if nulled:
            counters.finance_member_id_nulled += 1

        sp_name = f"finance_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            insert_row(conn, "finance", {
                "id": row.get("id") or None,
                "member_id": member_id,
                "attendee_ids": row.get("attendee_ids"),
                "file_name": row.get("file_name"),
                "status": row.get("status") or DEFAULT_STATUS,
                "created_at": row.get("created_at"),
                "confirmed_by": row.get("confirmed_by"),
                "confirmed_at": row.get("confirmed_at"),
                "paid_date": row.get("paid_date"),
            })
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            counters.finances_inserted += 1
        except psycopg.Error as e:
            _row_failed(conn, sp_name, "finance", raw, e, counters, rejects)
            counters.finance_errors += 1
            click.echo(f"[{run_id}] Error finance {row.get('id')}: {truncate_message(e, 100)}", err=True)

    if sync_sequence:
        sync_id_sequence(conn, "finance")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def format_table_counts(counts: dict[str, int | None]) -> str:
    lines = []
    for label, count in counts.items():
        lines.append(f"  {label:<12}: {'n/a' if count is None else count}")
    return "\n".join(lines)


def run_migration(
    conn: psycopg.Connection,
    sql: str,
    schemas: dict[str, TableSchema],
    counters: RunCounters,
    rejects: RejectWriter,
    run_id: str,
    arity_policy: str = "reject",
    batch_size: int = DEFAULT_BATCH_SIZE,
    dry_run: bool = False,
    master_data: list[MasterTable] | None = None,
) -> RunCounters:
    """Run every stage in dependency order.

    When master_data is given it is seeded first, so hospitals can
    reference their zones on an empty database.  Commits after each stage
    unless dry_run, in which case everything is rolled back at the end and
    id sequences are not touched.  Exceptions escaping a stage propagate
    to the caller.
    """
    def end_stage() -> None:
        if not dry_run:
            conn.commit()

    stats = ScanStats()

    if master_data is not None:
        seed_master_data(conn, master_data, counters, run_id, dry_run=dry_run)
        end_stage()

    seed_zone(conn, counters, run_id)
    end_stage()

    click.echo(f"[{run_id}] --- Migrating Hospitals ---")
    hospital_rows = parse_insert_values(sql, "hospital", stats)
    click.echo(f"[{run_id}] Found {len(hospital_rows)} hospital rows")
    load_hospitals(conn, hospital_rows, schemas["hospital"], counters, rejects, run_id, arity_policy)
    end_stage()
    click.echo(f"[{run_id}] Migrated/Updated {counters.hospitals_upserted} hospitals")

    click.echo(f"[{run_id}] --- Migrating Members ---")
    member_rows = parse_insert_values(sql, "member", stats)
    click.echo(f"[{run_id}] Found {len(member_rows)} member rows")
    load_members(
        conn, member_rows, schemas["member"], counters, rejects, run_id, arity_policy,
        sync_sequence=not dry_run,
    )
    end_stage()
    click.echo(
        f"[{run_id}] Migrated {counters.members_inserted} members "
        f"(skipped {counters.members_skipped_duplicate} duplicates)"
    )

    valid_member_ids = fetch_member_ids(conn)
    counters.valid_member_ids = len(valid_member_ids)

    click.echo(f"[{run_id}] --- Migrating Attendees ---")
    attendee_rows = parse_insert_values(sql, "attendee", stats)
    click.echo(f"[{run_id}] Found {len(attendee_rows)} attendee rows")
    click.echo(f"[{run_id}] Valid member IDs: {len(valid_member_ids)}")
    load_attendees(
        conn, attendee_rows, schemas["attendee"], valid_member_ids,
        counters, rejects, run_id, arity_policy, batch_size,
        sync_sequence=not dry_run,
    )
    end_stage()
    click.echo(
        f"[{run_id}] Migrated {counters.attendees_inserted} attendees total "
        f"({counters.attendee_created_by_nulled} with created_by set to null)"
    )

    click.echo(f"[{run_id}] --- Migrating Finances ---")
    finance_rows = parse_insert_values(sql, "finance", stats)
    click.echo(f"[{run_id}] Found {len(finance_rows)} finance rows")
    load_finances(
        conn, finance_rows, schemas["finance"], valid_member_ids,
        counters, rejects, run_id, arity_policy,
        sync_sequence=not dry_run,
    )
    end_stage()
    click.echo(
        f"[{run_id}] Migrated {counters.finances_inserted} finances "
        f"({counters.finance_member_id_nulled} with member_id set to null)"
    )

    counters.statements_matched = stats.statements
    counters.unbalanced_statements = stats.unbalanced_statements
    if stats.unbalanced_statements or stats.statements_without_values:
        counters.warnings.append(
            f"{stats.unbalanced_statements} unbalanced and "
            f"{stats.statements_without_values} VALUES-less INSERT statement(s)"
        )

    counters.table_counts = table_counts(conn)
    click.echo(f"[{run_id}] === Migration Complete ===")
    click.echo(f"[{run_id}] Final counts:")
    click.echo(format_table_counts(counters.table_counts))

    if dry_run:
        conn.rollback()
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    return counters
