from datetime import UTC, datetime
from unittest.mock import Mock

import pytest
from conftest import FIELD_CATALOG, make_issue

from ticket_pipeline.errors import ValidationError
from ticket_pipeline.field_discovery import FieldDiscoveryService
from ticket_pipeline.normalization import extract_custom_fields, extract_text_from_adf, normalize_issue


@pytest.fixture
def discovery():
    client = Mock()
    client.get_fields.return_value = FIELD_CATALOG
    service = FieldDiscoveryService(client)
    service.discover()
    return service


def test_normalizes_standard_and_mapped_fields(discovery):
    issue = make_issue(
        "ABC-12",
        summary="Checkout broken",
        assignee={"displayName": "Dana Reyes", "emailAddress": "dana@example.com"},
        timeoriginalestimate=5400,
        resolutiondate="2024-05-03T08:30:00.000+0000",
        components=[{"name": "Payments"}, {"id": "3"}],
        customfield_10001={"value": "P1"},
        customfield_10002=[{"value": "Urgent"}],
        customfield_10004="Major",
    )

    ticket = normalize_issue(issue, discovery)

    assert ticket.key == "ABC-12"
    assert ticket.project_key == "ABC"
    assert ticket.status == "Open"
    assert ticket.issue_type == "Bug"
    assert ticket.assignee_email == "dana@example.com"
    assert ticket.original_estimate_hours == 1.5
    assert ticket.resolved == datetime(2024, 5, 3, 8, 30, tzinfo=UTC)
    assert ticket.components == ["Payments"]
    assert ticket.customer_priority == "P1"
    assert ticket.internal_priority == "Urgent"
    assert ticket.severity == "Major"
    assert ticket.sla is None
    assert ticket.custom_fields["customfield_10001"] == "P1"


def test_adf_description_is_flattened(discovery):
    adf = {
        "type": "doc",
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": "Steps:"}]},
            {"type": "paragraph", "content": [{"type": "text", "text": "open the page"}]},
        ],
    }

    ticket = normalize_issue(make_issue("ABC-1", description=adf), discovery)

    assert ticket.description == "Steps: open the page"


def test_missing_key_is_rejected(discovery):
    with pytest.raises(ValidationError):
        normalize_issue({"fields": {"summary": "x"}}, discovery)


def test_unparseable_timestamp_is_rejected(discovery):
    with pytest.raises(ValidationError) as exc_info:
        normalize_issue(make_issue("ABC-1", created="yesterday"), discovery)

    assert exc_info.value.field == "created"


def test_extract_custom_fields_skips_nulls():
    fields = {"customfield_1": None, "customfield_2": {"value": "x"}, "summary": "s", "customfield_3": [1, 2]}

    assert extract_custom_fields(fields) == {"customfield_2": "x", "customfield_3": [1, 2]}


def test_extract_text_from_empty_adf():
    assert extract_text_from_adf({"type": "doc", "content": []}) == ""


def test_non_object_sub_fields_are_ignored(discovery):
    issue = make_issue(
        "ABC-5",
        assignee="jdoe",
        reporter=["someone"],
        project="ABC",
        labels="urgent",
        components={"name": "Payments"},
    )

    ticket = normalize_issue(issue, discovery)

    assert ticket.project_key == "ABC"
    assert ticket.assignee is None
    assert ticket.assignee_email is None
    assert ticket.reporter is None
    assert ticket.labels == []
    assert ticket.components == []


def test_non_string_key_is_rejected(discovery):
    with pytest.raises(ValidationError) as exc_info:
        normalize_issue({"key": 42, "fields": {"summary": "x"}}, discovery)

    assert exc_info.value.field == "key"


def test_non_object_fields_yield_an_empty_record(discovery):
    ticket = normalize_issue({"key": "ABC-9", "fields": "broken"}, discovery)

    assert ticket.project_key == "ABC"
    assert ticket.summary == ""
