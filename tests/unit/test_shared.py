"""Unit tests for conference_migrate.shared (no database)."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from conference_migrate.shared import RejectWriter, RunCounters, write_run_report


def _make_rejects(tmp_path: Path) -> RejectWriter:
    return RejectWriter(tmp_path / "rejects" / "rejects.csv")


def _read_rejects(path: Path) -> list[dict]:
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_until_first_write(self, tmp_path):
        rejects = _make_rejects(tmp_path)
        rejects.close()
        assert not (tmp_path / "rejects").exists()
        assert rejects.count == 0

    def test_rows_written(self, tmp_path):
        rejects = _make_rejects(tmp_path)
        rejects.write("member", ["5", "dup@example.com", "pw"], "duplicate_email")
        rejects.write("hospital", ["H9", "A"], "arity_mismatch: table=hospital expected=5 actual=2")
        rejects.close()

        rows = _read_rejects(tmp_path / "rejects" / "rejects.csv")
        assert rejects.count == 2
        assert rows[0]["table"] == "member"
        assert rows[0]["legacy_id"] == "5"
        assert json.loads(rows[0]["raw_values"]) == ["5", "dup@example.com", "pw"]
        assert rows[0]["_reject_reason"] == "duplicate_email"
        assert rows[1]["_reject_reason"].startswith("arity_mismatch")

    def test_thai_text_round_trips(self, tmp_path):
        rejects = _make_rejects(tmp_path)
        rejects.write("hospital", ["H1", "A", "รพ.ทดสอบ"], "db_error: boom")
        rejects.close()
        rows = _read_rejects(tmp_path / "rejects" / "rejects.csv")
        assert json.loads(rows[0]["raw_values"])[2] == "รพ.ทดสอบ"

    def test_empty_raw_row(self, tmp_path):
        rejects = _make_rejects(tmp_path)
        rejects.write("attendee", [], "arity_mismatch: table=attendee expected=47 actual=0")
        rejects.close()
        rows = _read_rejects(tmp_path / "rejects" / "rejects.csv")
        assert rows[0]["legacy_id"] == ""


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

class TestRunCounters:
    def test_db_phase_errors(self):
        c = RunCounters(hospital_errors=1, member_errors=2, attendee_errors=3, finance_errors=4)
        assert c.db_phase_errors == 10

    def test_to_dict(self):
        c = RunCounters(members_inserted=3)
        c.member_skips.append((7, "dup@example.com"))
        c.warnings.extend(f"w{i}" for i in range(60))
        d = c.to_dict()
        assert d["members_inserted"] == 3
        assert d["member_skips"] == [{"legacy_id": 7, "email": "dup@example.com"}]
        assert len(d["warnings"]) == 50
        assert d["db_phase_errors"] == 0

    def test_to_dict_is_json_serializable(self):
        c = RunCounters()
        c.table_counts = {"members": 1, "levels": None}
        json.dumps(c.to_dict())


# ---------------------------------------------------------------------------
# write_run_report
# ---------------------------------------------------------------------------

def test_write_run_report(tmp_path):
    counters = RunCounters(hospitals_upserted=2, attendee_created_by_nulled=1)
    path = write_run_report(
        "run-123",
        "2024-06-08T12:00:00",
        "migrate",
        False,
        {"dump_path": "vachira_register.sql", "schema_file": "config/legacy_schema.yml"},
        counters,
        report_dir=tmp_path / "reports",
    )
    assert path == tmp_path / "reports" / "run-123.json"
    report = json.loads(path.read_text())
    assert report["run_id"] == "run-123"
    assert report["mode"] == "migrate"
    assert report["dry_run"] is False
    assert report["dump_path"] == "vachira_register.sql"
    assert report["counters"]["hospitals_upserted"] == 2
    assert report["counters"]["attendee_created_by_nulled"] == 1
    assert "finished_at" in report
