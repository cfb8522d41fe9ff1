"""Conversion of raw tracker payloads into Ticket models."""

from typing import Any

from .errors import ValidationError
from .field_discovery import FieldDiscoveryService
from .models import SemanticField, Ticket
from .validation import parse_datetime


def normalize_issue(issue_data: dict[str, Any], discovery: FieldDiscoveryService) -> Ticket:
    """Parse a JIRA issue payload into our standardized model."""
    key = issue_data.get("key")
    if not key:
        raise ValidationError("Invalid record: missing key", field="key")
    if not isinstance(key, str):
        raise ValidationError(f"Invalid record: key must be a string, got {type(key).__name__}", field="key")

    fields = _mapping(issue_data.get("fields"))

    project = _mapping(fields.get("project"))
    project_key = project.get("key") or key.rsplit("-", 1)[0]

    description = fields.get("description")
    if isinstance(description, dict):
        description = extract_text_from_adf(description)

    assignee = _mapping(fields.get("assignee"))
    reporter = _mapping(fields.get("reporter"))

    estimate_seconds = fields.get("timeoriginalestimate")
    estimate_hours = round(estimate_seconds / 3600, 2) if isinstance(estimate_seconds, (int, float)) else None

    return Ticket(
        key=key,
        project_key=project_key,
        summary=fields.get("summary") or "",
        description=description or None,
        status=_name(fields.get("status")),
        priority=_name(fields.get("priority")),
        issue_type=_name(fields.get("issuetype")),
        assignee=assignee.get("displayName"),
        assignee_email=assignee.get("emailAddress"),
        reporter=reporter.get("displayName", reporter.get("emailAddress")),
        created=parse_datetime(fields.get("created"), "created"),
        updated=parse_datetime(fields.get("updated"), "updated"),
        resolved=parse_datetime(fields.get("resolutiondate"), "resolved"),
        labels=[str(label) for label in _sequence(fields.get("labels"))],
        components=[c["name"] for c in _sequence(fields.get("components")) if isinstance(c, dict) and c.get("name")],
        original_estimate_hours=estimate_hours,
        customer_priority=_text(discovery.extract_value(issue_data, SemanticField.CUSTOMER_PRIORITY)),
        internal_priority=_text(discovery.extract_value(issue_data, SemanticField.INTERNAL_PRIORITY)),
        sla=_text(discovery.extract_value(issue_data, SemanticField.SLA)),
        severity=_text(discovery.extract_value(issue_data, SemanticField.SEVERITY)),
        custom_fields=extract_custom_fields(fields),
    )


def extract_custom_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Extract custom fields from JIRA issue fields."""
    custom_fields = {}

    for key, value in fields.items():
        if key.startswith("customfield_") and value is not None:
            if isinstance(value, dict):
                custom_fields[key] = value.get("value", value)
            elif isinstance(value, list):
                custom_fields[key] = [item.get("value", item) if isinstance(item, dict) else item for item in value]
            else:
                custom_fields[key] = value

    return custom_fields


def extract_text_from_adf(adf_content: dict[str, Any]) -> str:
    """Extract plain text from Atlassian Document Format."""
    text_parts: list[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            if node.get("type") == "text":
                text_parts.append(node.get("text", ""))
            for child in node.get("content", []) or []:
                walk(child)
        elif isinstance(node, list):
            for child in node:
                walk(child)

    walk(adf_content)
    return " ".join(part for part in text_parts if part)


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _sequence(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    return None if value is None else str(value)


def _text(value: Any) -> str | None:
    return None if value is None else str(value)

