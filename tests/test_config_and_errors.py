import pytest
from pydantic import ValidationError as ModelValidationError

from ticket_pipeline.config import ExpertiseConfig, RateLimitConfig, load_config
from ticket_pipeline.errors import (
    ExternalServiceError,
    PartialRecordError,
    RateLimitExceeded,
    ValidationError,
    describe_error,
)
from ticket_pipeline.logging_config import configure_logging


@pytest.fixture
def tracker_env(monkeypatch):
    monkeypatch.setenv("JIRA_BASE_URL", "https://example.atlassian.net")
    monkeypatch.setenv("JIRA_USERNAME", "bot@example.com")
    monkeypatch.setenv("JIRA_API_TOKEN", "secret")


def test_load_config_defaults(tracker_env):
    config = load_config()

    assert config.storage.backend == "sqlite"
    assert (config.api_rate_limit.max_requests, config.api_rate_limit.window_seconds) == (100, 60)
    assert (config.sync_rate_limit.max_requests, config.sync_rate_limit.window_seconds) == (5, 300)
    assert config.sync.default_excluded_types == ["Sub-task"]
    assert config.expertise == ExpertiseConfig()
    assert config.debug is False
    assert config.sync.session_retention_days == 30
    assert config.schedule.enabled is False
    assert config.schedule.interval_seconds == 300
    assert config.schedule.projects == []


def test_load_config_overrides(tracker_env, monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "duckdb")
    monkeypatch.setenv("SYNC_EXCLUDED_TYPES", "Epic, Sub-task")
    monkeypatch.setenv("EXPERTISE_LOOKBACK_MONTHS", "12")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("ENABLE_AUTO_SYNC", "true")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("SYNC_PROJECTS", "ABC,XYZ")
    monkeypatch.setenv("SESSION_RETENTION_DAYS", "7")

    config = load_config()

    assert config.storage.backend == "duckdb"
    assert config.sync.default_excluded_types == ["Epic", "Sub-task"]
    assert config.expertise.lookback_months == 12
    assert config.debug is True
    assert config.schedule.enabled is True
    assert config.schedule.interval_seconds == 60
    assert config.schedule.projects == ["ABC", "XYZ"]
    assert config.sync.session_retention_days == 7


def test_invalid_limits_are_rejected():
    with pytest.raises(ModelValidationError):
        RateLimitConfig(max_requests=0, window_seconds=60)
    with pytest.raises(ModelValidationError):
        ExpertiseConfig(expert_threshold=40, intermediate_threshold=40)


def test_validation_error_defaults():
    error = ValidationError("must be positive", field="person_id")

    assert error.errors == ["person_id: must be positive"]
    assert ValidationError("bad").errors == ["bad"]


def test_describe_validation_error():
    description = describe_error(ValidationError("Invalid", errors=["a: x", "b: y"]))

    assert description == {"type": "ValidationError", "message": "Invalid", "details": ["a: x", "b: y"]}


def test_describe_rate_limit():
    assert describe_error(RateLimitExceeded(12))["retry_after"] == 12


def test_describe_unexpected_error_hides_message_unless_debug():
    error = KeyError("internal")

    assert describe_error(error)["message"] == "Internal server error"
    debug = describe_error(error, debug=True)
    assert "internal" in debug["detail"]
    assert debug["traceback"]


def test_pipeline_errors_keep_their_message():
    assert describe_error(ExternalServiceError("JIRA down"))["message"] == "JIRA down"


def test_partial_record_error():
    error = PartialRecordError("ABC-1", "summary: required field missing")

    assert str(error) == "ABC-1: summary: required field missing"
    assert error.to_dict() == {"record_key": "ABC-1", "error": "summary: required field missing"}


def test_configure_logging_accepts_levels():
    configure_logging("debug", json_output=False)
    configure_logging("not-a-level", json_output=True)
