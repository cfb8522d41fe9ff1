from unittest.mock import Mock, patch

from conftest import FIELD_CATALOG

from ticket_pipeline.config import TrackerConfig
from ticket_pipeline.errors import ExternalServiceError
from ticket_pipeline.field_discovery import (
    BASE_FIELDS,
    FieldDiscoveryService,
    map_fields,
    normalize_field_value,
    to_field_value,
)
from ticket_pipeline.jira_client import JiraClient
from ticket_pipeline.models import MultiSelectValue, OptionValue, ScalarValue, SemanticField


def test_exact_names_are_mapped():
    mapping = map_fields(FIELD_CATALOG)

    assert mapping.get(SemanticField.CUSTOMER_PRIORITY) == "customfield_10001"
    assert mapping.get(SemanticField.INTERNAL_PRIORITY) == "customfield_10002"
    assert mapping.get(SemanticField.SLA) == "customfield_10003"
    assert mapping.get(SemanticField.SEVERITY) == "customfield_10004"
    assert mapping.warnings == []


def test_exact_match_beats_heuristic():
    catalog = [
        {"id": "customfield_1", "name": "Legacy customer prio score", "custom": True},
        {"id": "customfield_2", "name": "Customer Priority", "custom": True},
    ]

    mapping = map_fields(catalog)

    assert mapping.get(SemanticField.CUSTOMER_PRIORITY) == "customfield_2"


def test_heuristic_only_considers_custom_fields():
    catalog = [
        {"id": "priority", "name": "Internal priority of the system", "custom": False},
        {"id": "customfield_20", "name": "Internal prio (team)", "custom": True},
    ]

    mapping = map_fields(catalog)

    assert mapping.get(SemanticField.INTERNAL_PRIORITY) == "customfield_20"


def test_sla_heuristic_needs_whole_word():
    catalog = [
        {"id": "customfield_30", "name": "Slack channel", "custom": True},
        {"id": "customfield_31", "name": "Response SLA (hours)", "custom": True},
    ]

    mapping = map_fields(catalog)

    assert mapping.get(SemanticField.SLA) == "customfield_31"


def test_ambiguous_matches_keep_first_and_warn():
    catalog = [
        {"id": "customfield_40", "name": "Severity (legacy)", "custom": True},
        {"id": "customfield_41", "name": "Bug severity", "custom": True},
    ]

    mapping = map_fields(catalog)

    assert mapping.get(SemanticField.SEVERITY) == "customfield_40"
    assert len(mapping.warnings) == 1
    assert "customfield_41" in mapping.warnings[0]


def test_no_candidates_leaves_semantic_unmapped():
    mapping = map_fields([{"id": "summary", "name": "Summary", "custom": False}])

    assert mapping.fields == {}


def test_fields_list_has_base_fields_and_discovered_ids_without_duplicates():
    # A tenant that reuses a base field for severity
    catalog = [{"id": "labels", "name": "Severity", "custom": False}] + FIELD_CATALOG
    client = Mock()
    client.get_fields.return_value = catalog
    service = FieldDiscoveryService(client)
    service.discover()

    fields = service.fields_list()

    assert fields[: len(BASE_FIELDS)] == list(BASE_FIELDS)
    assert service.mapping.get(SemanticField.SEVERITY) == "labels"
    assert len(fields) == len(set(fields))
    assert "customfield_10001" in fields


def test_discovery_is_cached_per_service():
    client = Mock()
    client.get_fields.return_value = FIELD_CATALOG
    service = FieldDiscoveryService(client)

    service.discover()
    service.discover()

    assert client.get_fields.call_count == 1


def test_catalog_failure_yields_empty_mapping_and_is_retried():
    client = Mock()
    client.get_fields.side_effect = ExternalServiceError("JIRA server error: 503", status_code=503)
    service = FieldDiscoveryService(client)

    mapping = service.discover()
    service.discover()

    assert mapping.fields == {}
    assert service.fields_list() == list(BASE_FIELDS)
    assert client.get_fields.call_count == 2


def test_extract_value_uses_discovered_identifier():
    client = Mock()
    client.get_fields.return_value = FIELD_CATALOG
    service = FieldDiscoveryService(client)
    service.discover()
    issue = {"fields": {"customfield_10001": {"id": "7", "value": "P1"}, "customfield_10003": ""}}

    assert service.extract_value(issue, SemanticField.CUSTOMER_PRIORITY) == "P1"
    assert service.extract_value(issue, SemanticField.SLA) is None
    assert service.extract_value(issue, SemanticField.SEVERITY) is None


class TestFieldValues:
    def test_option(self):
        value = to_field_value({"id": 10, "value": "High"})

        assert isinstance(value, OptionValue)
        assert value.option_id == "10"
        assert normalize_field_value(value) == "High"

    def test_option_falls_back_to_name(self):
        assert normalize_field_value(to_field_value({"name": "Gold"})) == "Gold"

    def test_multi_select_takes_first(self):
        value = to_field_value([{"value": "A"}, {"value": "B"}])

        assert isinstance(value, MultiSelectValue)
        assert normalize_field_value(value) == "A"

    def test_empty_multi_select(self):
        assert normalize_field_value(to_field_value([])) is None

    def test_scalar(self):
        value = to_field_value(4)

        assert isinstance(value, ScalarValue)
        assert normalize_field_value(value) == 4

    def test_none(self):
        assert to_field_value(None) is None
        assert normalize_field_value(None) is None


def test_catalog_entries_without_id_are_skipped():
    catalog = [
        {"name": "Customer Prio", "custom": True},
        {"id": "customfield_20001", "name": "Customer Prio", "custom": True},
        {"id": "customfield_20002"},
    ]

    mapping = map_fields(catalog)

    assert mapping.get(SemanticField.CUSTOMER_PRIORITY) == "customfield_20001"
    assert mapping.warnings == []


def test_html_catalog_response_yields_empty_mapping():
    config = TrackerConfig(base_url="https://example.atlassian.net", username="bot@example.com", api_token="t")
    client = JiraClient(config, max_retries=1)
    response = Mock(status_code=200, ok=True, content=b"<html>Login</html>", headers={"Content-Type": "text/html"})
    response.json.side_effect = ValueError("Expecting value")

    with patch.object(client.session, "request", return_value=response):
        mapping = FieldDiscoveryService(client).discover()

    assert mapping.fields == {}


def test_extract_value_ignores_non_object_fields():
    client = Mock()
    client.get_fields.return_value = FIELD_CATALOG
    service = FieldDiscoveryService(client)
    service.discover()

    assert service.extract_value({"key": "ABC-1", "fields": "oops"}, SemanticField.SLA) is None
