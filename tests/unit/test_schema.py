"""Unit tests for conference_migrate.schema."""

from __future__ import annotations

import textwrap
from datetime import datetime
from pathlib import Path

import pytest
import yaml

from conference_migrate.schema import (
    ArityError,
    ColumnSpec,
    SchemaValidationError,
    TableSchema,
    decode_row,
    load_table_schemas,
    validate_schema_data,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent
SHIPPED_SCHEMA = PROJECT_ROOT / "config" / "legacy_schema.yml"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MINIMAL_YAML = textwrap.dedent("""\
    version: 1
    tables:
      hospital:
        columns:
          - {name: id, field: code, kind: raw}
          - {name: hospital_name, field: name, kind: raw}
      member:
        columns:
          - {name: member_id, field: id, kind: int}
      attendee:
        columns:
          - {name: att_id, field: id, kind: int}
          - {name: att_airtime1, kind: skip}
          - {name: att_datetime, field: created_at, kind: date}
      finance:
        columns:
          - {name: f_id, field: id, kind: int}
""")


@pytest.fixture
def minimal_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "schema.yml"
    p.write_text(MINIMAL_YAML, encoding="utf-8")
    return p


@pytest.fixture
def minimal_data() -> dict:
    return yaml.safe_load(MINIMAL_YAML)


@pytest.fixture
def hospital_schema() -> TableSchema:
    return TableSchema(
        table="hospital",
        columns=[
            ColumnSpec("id", "code", "raw"),
            ColumnSpec("hospital_type", "hospital_type", "str"),
            ColumnSpec("hospital_name", "name", "raw"),
            ColumnSpec("zone", "zone_code", "str"),
            ColumnSpec("province", "province", "str"),
        ],
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadTableSchemas:
    def test_shipped_schema_loads(self):
        schemas = load_table_schemas(SHIPPED_SCHEMA)
        assert set(schemas) >= {"hospital", "member", "attendee", "finance"}
        assert schemas["hospital"].arity == 5
        assert schemas["member"].arity == 6
        assert schemas["attendee"].arity == 47
        assert schemas["finance"].arity == 9

    def test_shipped_attendee_skips_time_columns(self):
        schema = load_table_schemas(SHIPPED_SCHEMA)["attendee"]
        skipped = [c.name for c in schema.columns if c.kind == "skip"]
        assert "att_airtime1" in skipped
        assert "att_lastupdate" in skipped
        assert len(skipped) == 7

    def test_minimal(self, minimal_yaml_path):
        schemas = load_table_schemas(minimal_yaml_path)
        assert schemas["attendee"].column_names == ["att_id", "att_airtime1", "att_datetime"]
        assert schemas["attendee"].columns[1].field is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_table_schemas(tmp_path / "nope.yml")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateSchemaData:
    def test_valid(self, minimal_data):
        validate_schema_data(minimal_data)

    def test_not_a_mapping(self):
        with pytest.raises(SchemaValidationError, match="tables"):
            validate_schema_data(["hospital"])

    def test_missing_table(self, minimal_data):
        del minimal_data["tables"]["finance"]
        with pytest.raises(SchemaValidationError, match="finance"):
            validate_schema_data(minimal_data)

    def test_empty_columns(self, minimal_data):
        minimal_data["tables"]["member"]["columns"] = []
        with pytest.raises(SchemaValidationError, match="non-empty"):
            validate_schema_data(minimal_data)

    def test_column_without_kind(self, minimal_data):
        minimal_data["tables"]["member"]["columns"] = [{"name": "member_id", "field": "id"}]
        with pytest.raises(SchemaValidationError, match="'name' and 'kind'"):
            validate_schema_data(minimal_data)

    def test_duplicate_column_name(self, minimal_data):
        minimal_data["tables"]["hospital"]["columns"].append(
            {"name": "id", "field": "province", "kind": "str"}
        )
        with pytest.raises(SchemaValidationError, match="duplicate column name"):
            validate_schema_data(minimal_data)

    def test_unknown_kind(self, minimal_data):
        minimal_data["tables"]["member"]["columns"][0]["kind"] = "float"
        with pytest.raises(SchemaValidationError, match="kind"):
            validate_schema_data(minimal_data)

    def test_field_required_unless_skip(self, minimal_data):
        minimal_data["tables"]["member"]["columns"][0].pop("field")
        with pytest.raises(SchemaValidationError, match="'field' is required"):
            validate_schema_data(minimal_data)

    def test_field_mapped_twice(self, minimal_data):
        minimal_data["tables"]["hospital"]["columns"].append(
            {"name": "hospital_code", "field": "code", "kind": "str"}
        )
        with pytest.raises(SchemaValidationError, match="mapped twice"):
            validate_schema_data(minimal_data)

    def test_unknown_target_field(self, minimal_data):
        minimal_data["tables"]["hospital"]["columns"][1]["field"] = "hospital_name"
        with pytest.raises(SchemaValidationError, match="unknown target field"):
            validate_schema_data(minimal_data)

    def test_is_value_error(self):
        assert issubclass(SchemaValidationError, ValueError)


# ---------------------------------------------------------------------------
# decode_row
# ---------------------------------------------------------------------------

class TestDecodeRow:
    def test_hospital(self, hospital_schema):
        row = decode_row(hospital_schema, ["H001", "A", "Test Hospital", "Z01", "Bangkok"])
        assert row == {
            "code": "H001",
            "hospital_type": "A",
            "name": "Test Hospital",
            "zone_code": "Z01",
            "province": "Bangkok",
        }

    def test_raw_keeps_null_token(self, hospital_schema):
        row = decode_row(hospital_schema, ["H002", "NULL", "NULL", "NULL", ""])
        assert row["name"] == "NULL"
        assert row["hospital_type"] is None
        assert row["province"] is None

    def test_reject_short_row(self, hospital_schema):
        with pytest.raises(ArityError) as exc_info:
            decode_row(hospital_schema, ["H001", "A"])
        err = exc_info.value
        assert (err.table, err.expected, err.actual) == ("hospital", 5, 2)
        assert str(err) == "arity_mismatch: table=hospital expected=5 actual=2"

    def test_reject_long_row(self, hospital_schema):
        with pytest.raises(ArityError):
            decode_row(hospital_schema, ["H001", "A", "X", "Z01", "BKK", "extra"])

    def test_pad_short_row(self, hospital_schema):
        row = decode_row(hospital_schema, ["H001", "A"], arity_policy="pad")
        assert row["code"] == "H001"
        assert row["name"] is None
        assert row["province"] is None

    def test_pad_drops_surplus(self, hospital_schema):
        row = decode_row(
            hospital_schema, ["H001", "A", "X", "Z01", "BKK", "extra"], arity_policy="pad"
        )
        assert row["province"] == "BKK"
        assert len(row) == 5

    def test_unknown_policy(self, hospital_schema):
        with pytest.raises(ValueError, match="unknown arity policy"):
            decode_row(hospital_schema, ["H001"], arity_policy="guess")

    def test_unknown_policy_ignored_when_arity_matches(self, hospital_schema):
        row = decode_row(hospital_schema, ["H001", "A", "X", "Z01", "BKK"], arity_policy="guess")
        assert row["code"] == "H001"

    def test_skip_columns_not_emitted(self, minimal_yaml_path):
        schema = load_table_schemas(minimal_yaml_path)["attendee"]
        row = decode_row(schema, ["7", "08:30", "2024-06-08 12:25:07"])
        assert row == {"id": 7, "created_at": datetime(2024, 6, 8, 12, 25, 7)}

    def test_sentinel_date_becomes_none(self, minimal_yaml_path):
        schema = load_table_schemas(minimal_yaml_path)["attendee"]
        row = decode_row(schema, ["7", "", "0000-00-00 00:00:00"])
        assert row["created_at"] is None
