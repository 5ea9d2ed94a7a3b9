"""conference_migrate.cli

Unified CLI entrypoint for the legacy conference-registration migration.

Modes (--mode):
  migrate       - load zone/hospital/member/attendee/finance from the dump (default);
                  --seed-master-data seeds the master tables first
  seed          - upsert zones, airlines, levels, reg types, positions and hotels
  verify        - print table counts and sample rows
  find_missing  - list dump attendees that did not make it into the attendee table

Usage (migrate):
    python -m conference_migrate.cli \\
        --mode migrate \\
        --db-dsn "$DATABASE_URL" \\
        --dump-path vachira_register.sql \\
        --schema-file config/legacy_schema.yml

Usage (seed):
    python -m conference_migrate.cli \\
        --mode seed \\
        --db-dsn "$DATABASE_URL" \\
        --master-data-file config/master_data.yml

Usage (find_missing):
    python -m conference_migrate.cli \\
        --mode find_missing \\
        --db-dsn "$DATABASE_URL" \\
        --dump-path vachira_register.sql
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from conference_migrate.diagnostics import (
    build_verification_report,
    find_missing_attendees,
    format_missing_report,
)
from conference_migrate.migrate import DEFAULT_BATCH_SIZE, run_migration
from conference_migrate.schema import (
    ARITY_POLICIES,
    SchemaValidationError,
    TableSchema,
    load_table_schemas,
)
from conference_migrate.seed import MasterTable, load_master_data, seed_master_data
from conference_migrate.shared import RejectWriter, RunCounters, write_run_report
from conference_migrate.sql_dump import read_dump

log = logging.getLogger(__name__)


def _load_inputs(
    run_id: str,
    dump_path: str,
    schema_file: str,
) -> tuple[str, dict[str, TableSchema]]:
    """Read schema and dump, exiting non-zero if either is unusable."""
    try:
        schemas = load_table_schemas(Path(schema_file))
    except (OSError, SchemaValidationError) as e:
        click.echo(f"[{run_id}] FATAL: cannot load schema file {schema_file}: {e}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Reading SQL file {dump_path}...")
    try:
        sql = read_dump(Path(dump_path))
    except (OSError, UnicodeDecodeError) as e:
        click.echo(f"[{run_id}] FATAL: cannot read dump {dump_path}: {e}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] SQL file size: {len(sql) / 1024 / 1024:.2f} MB")
    return sql, schemas


def _load_master(run_id: str, master_data_file: str) -> list[MasterTable]:
    try:
        return load_master_data(Path(master_data_file))
    except (OSError, SchemaValidationError) as e:
        click.echo(
            f"[{run_id}] FATAL: cannot load master data file {master_data_file}: {e}",
            err=True,
        )
        sys.exit(1)


def _run_migrate(
    run_id: str,
    started_at: str,
    db_dsn: str,
    counters: RunCounters,
    rejects: RejectWriter,
    dump_path: str,
    schema_file: str,
    arity_policy: str,
    batch_size: int,
    dry_run: bool,
    master_data_file: str | None = None,
) -> None:
    sql, schemas = _load_inputs(run_id, dump_path, schema_file)
    master_data = _load_master(run_id, master_data_file) if master_data_file else None
    counters.dump_bytes = len(sql.encode("utf-8"))

    conn = None
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
        run_migration(
            conn, sql, schemas, counters, rejects, run_id,
            arity_policy=arity_policy,
            batch_size=batch_size,
            dry_run=dry_run,
            master_data=master_data,
        )
    except Exception as e:
        if conn is not None and not conn.closed:
            conn.rollback()
        log.exception("Migration run %s failed", run_id)
        click.echo(f"[{run_id}] FATAL: run failed: {e}", err=True)
        sys.exit(1)
    finally:
        if conn is not None:
            conn.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, "migrate", dry_run,
        {"dump_path": dump_path, "schema_file": schema_file},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected row(s) written")


def _run_seed(
    run_id: str,
    started_at: str,
    db_dsn: str,
    master_data_file: str,
    dry_run: bool,
) -> None:
    master_data = _load_master(run_id, master_data_file)
    counters = RunCounters()

    conn = None
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
        seed_master_data(conn, master_data, counters, run_id, dry_run=dry_run)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
    except Exception as e:
        if conn is not None and not conn.closed:
            conn.rollback()
        log.exception("Seed run %s failed", run_id)
        click.echo(f"[{run_id}] FATAL: seed failed: {e}", err=True)
        sys.exit(1)
    finally:
        if conn is not None:
            conn.close()

    report_path = write_run_report(
        run_id, started_at, "seed", dry_run,
        {"master_data_file": master_data_file},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_verify(run_id: str, db_dsn: str) -> None:
    try:
        with psycopg.connect(db_dsn) as conn:
            click.echo(build_verification_report(conn))
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: verification failed: {e}", err=True)
        sys.exit(1)


def _run_find_missing(run_id: str, db_dsn: str, dump_path: str, schema_file: str) -> None:
    sql, schemas = _load_inputs(run_id, dump_path, schema_file)
    try:
        with psycopg.connect(db_dsn) as conn:
            report = find_missing_attendees(conn, sql, schemas["attendee"])
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: find_missing failed: {e}", err=True)
        sys.exit(1)
    click.echo(format_missing_report(report))


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="migrate",
    type=click.Choice(["migrate", "seed", "verify", "find_missing"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="DATABASE_URL", help="PostgreSQL DSN")
@click.option(
    "--dump-path",
    default="vachira_register.sql",
    show_default=True,
    type=click.Path(),
    help="[migrate|find_missing] mysqldump SQL file",
)
@click.option(
    "--schema-file",
    default="config/legacy_schema.yml",
    show_default=True,
    type=click.Path(),
    help="[migrate|find_missing] YAML column map of the legacy tables",
)
@click.option(
    "--master-data-file",
    default="config/master_data.yml",
    show_default=True,
    type=click.Path(),
    help="[seed|migrate] YAML master rows (zones, airlines, levels, reg types, positions, hotels)",
)
@click.option(
    "--seed-master-data",
    "with_master_data",
    is_flag=True,
    default=False,
    help="[migrate] Seed master data before loading the dump",
)
@click.option(
    "--arity-policy",
    default="reject",
    type=click.Choice(list(ARITY_POLICIES)),
    show_default=True,
    help="[migrate] Rows with the wrong column count: reject them, or pad/truncate",
)
@click.option(
    "--batch-size",
    default=DEFAULT_BATCH_SIZE,
    type=click.IntRange(min=1),
    show_default=True,
    help="[migrate] Attendee rows between progress updates",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/migration_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    dump_path: str,
    schema_file: str,
    master_data_file: str,
    with_master_data: bool,
    arity_policy: str,
    batch_size: int,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Legacy conference-registration migration CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "seed":
        _run_seed(run_id, started_at, db_dsn, master_data_file, dry_run)
    elif mode == "verify":
        _run_verify(run_id, db_dsn)
    elif mode == "find_missing":
        _run_find_missing(run_id, db_dsn, dump_path, schema_file)
    else:
        counters = RunCounters()
        rejects = RejectWriter(Path(rejects_path))
        _run_migrate(
            run_id, started_at, db_dsn, counters, rejects,
            dump_path=dump_path,
            schema_file=schema_file,
            arity_policy=arity_policy,
            batch_size=batch_size,
            dry_run=dry_run,
            master_data_file=master_data_file if with_master_data else None,
        )


if __name__ == "__main__":
    main()
