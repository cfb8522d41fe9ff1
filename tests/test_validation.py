from datetime import UTC, datetime, timedelta

import pytest

from ticket_pipeline.errors import ValidationError
from ticket_pipeline.models import Ticket
from ticket_pipeline.validation import (
    parse_datetime,
    safe_sql_identifier,
    sanitize_string,
    validate_date,
    validate_json,
    validate_pagination,
    validate_positive_int,
    validate_record_for_storage,
    validate_record_key,
    validate_string_array,
    validate_sync_options,
)


class TestRecordKey:
    @pytest.mark.parametrize("key", ["AB-1", "PROJ-123", "A_B2-9999999999"])
    def test_valid(self, key):
        assert validate_record_key(key) == key

    @pytest.mark.parametrize(
        "key", ["", None, "proj-1", "P-1", "PROJ", "PROJ-", "PROJ-1a", 42, "ABCDEFGHIJK-1", "ABC-1\n"]
    )
    def test_invalid(self, key):
        with pytest.raises(ValidationError) as exc_info:
            validate_record_key(key)
        assert exc_info.value.field == "key"


class TestScalars:
    def test_positive_int(self):
        assert validate_positive_int("7", "person_id") == 7

    @pytest.mark.parametrize("value", [0, -1, "abc", None, 1.5, True])
    def test_positive_int_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_positive_int(value, "person_id")

    def test_sanitize_string(self):
        assert sanitize_string("  it's\0 fine  ") == "it''s fine"
        assert sanitize_string("it's", escape_quotes=False) == "it's"
        assert sanitize_string("abcdef", max_length=3) == "abc"
        assert sanitize_string("   ") is None
        assert sanitize_string(None) is None

    def test_parse_datetime_handles_jira_offsets(self):
        parsed = parse_datetime("2024-05-01T12:00:00.000+0200")

        assert parsed == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)

    def test_parse_datetime_assumes_utc_for_naive(self):
        assert parse_datetime("2024-05-01T12:00:00").tzinfo == UTC

    def test_validate_date_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            validate_date("1900-01-01T00:00:00Z")
        with pytest.raises(ValidationError):
            validate_date(datetime.now(UTC) + timedelta(days=365 * 20))

    def test_validate_json(self):
        assert validate_json({"a": 1}) == '{"a": 1}'
        assert validate_json(None) == "{}"
        with pytest.raises(ValidationError):
            validate_json("{not json")
        with pytest.raises(ValidationError):
            validate_json("x" * 20, max_size=10)

    def test_validate_string_array(self):
        assert validate_string_array([" a ", None, "", "b"]) == ["a", "b"]
        with pytest.raises(ValidationError):
            validate_string_array("not-a-list")
        with pytest.raises(ValidationError):
            validate_string_array(["x"] * 101)

    def test_validate_pagination_clamps(self):
        assert validate_pagination("50", "10") == (50, 10)
        assert validate_pagination(0, -5) == (100, 0)
        assert validate_pagination(50_000, None) == (10_000, 0)
        with pytest.raises(ValidationError):
            validate_pagination(10, 2_000_000)

    def test_safe_sql_identifier(self):
        assert safe_sql_identifier("ticket_key") == "ticket_key"
        with pytest.raises(ValidationError):
            safe_sql_identifier("tickets; DROP TABLE tickets")
        with pytest.raises(ValidationError):
            safe_sql_identifier("tickets\n")


class TestSyncOptions:
    def test_accepts_camel_case(self):
        options = validate_sync_options(
            {"updatedSince": "2024-01-01T00:00:00Z", "customJQL": "status = Open", "excludedTypes": ["Epic"]}
        )

        assert options.updated_since == datetime(2024, 1, 1, tzinfo=UTC)
        assert options.custom_jql == "status = Open"
        assert options.excluded_types == ["Epic"]

    def test_empty_options(self):
        options = validate_sync_options(None)

        assert options.updated_since is None
        assert options.excluded_types is None
        assert options.incremental is False

    @pytest.mark.parametrize("options", [["incremental"], "incremental", 7])
    def test_non_object_options_are_rejected(self, options):
        with pytest.raises(ValidationError) as exc_info:
            validate_sync_options(options)
        assert exc_info.value.field == "options"

    def test_excluded_types_are_bounded(self):
        options = validate_sync_options({"excluded_types": ["T" * 80] * 30})

        assert len(options.excluded_types) == 20
        assert all(len(t) == 50 for t in options.excluded_types)

    def test_collects_every_problem(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_sync_options(
                {"updated_since": "garbage", "custom_jql": "project = X; DROP TABLE", "excluded_types": "Epic"}
            )

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any(e.startswith("updated_since") for e in errors)
        assert any(e.startswith("custom_jql") for e in errors)
        assert any(e.startswith("excluded_types") for e in errors)


class TestRecordForStorage:
    def test_valid_record_is_cleaned(self):
        record = Ticket(key="ABC-1", project_key="ABC", summary="  Broken login\0 ", labels=[" ui "])

        cleaned, owner = validate_record_for_storage(record, 3)

        assert owner == 3
        assert cleaned.summary == "Broken login"
        assert cleaned.labels == ["ui"]

    def test_reports_all_errors_at_once(self):
        record = Ticket(key="bad", project_key="X", summary="", original_estimate_hours=-2)

        with pytest.raises(ValidationError) as exc_info:
            validate_record_for_storage(record, 0)

        errors = exc_info.value.errors
        assert any(e.startswith("key") for e in errors)
        assert any(e.startswith("owner_id") for e in errors)
        assert any(e.startswith("summary") for e in errors)
        assert any(e.startswith("original_estimate_hours") for e in errors)

    def test_quotes_are_preserved_in_stored_text(self):
        record = Ticket(key="ABC-2", project_key="ABC", summary="Customer's export fails")

        cleaned, _ = validate_record_for_storage(record, 1)

        assert cleaned.summary == "Customer's export fails"
