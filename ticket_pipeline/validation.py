"""Validation and sanitization for data entering the pipeline.

Every function either returns a normalized value or raises ``ValidationError``
naming the offending field. Sanitization here is a safety net on top of
parameterized queries, never a replacement for them.
"""

import json
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from .errors import ValidationError
from .models import SyncOptions, Ticket

RECORD_KEY_PATTERN = re.compile(r"[A-Z][A-Z0-9_]{1,9}-\d{1,10}")
SQL_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_BASIC_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")

MAX_PAST = timedelta(days=50 * 365)
MAX_FUTURE = timedelta(days=10 * 365)
SUSPICIOUS_FILTER_MARKERS = (";", "drop")


def validate_record_key(key: Any) -> str:
    """Validate a PROJECT-NUMBER record key."""
    if not key or not isinstance(key, str):
        raise ValidationError("Invalid record key: must be a string", field="key")

    if not RECORD_KEY_PATTERN.fullmatch(key):
        raise ValidationError(f"Invalid record key format: {key}", field="key")

    return key.strip()


def validate_positive_int(value: Any, field: str = "id") -> int:
    """Validate a positive integer identifier."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: must be a positive integer", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: must be a positive integer", field=field) from None

    if isinstance(value, float) and value != number:
        raise ValidationError(f"Invalid {field}: must be a positive integer", field=field)
    if number < 1:
        raise ValidationError(f"Invalid {field}: must be a positive integer", field=field)

    return number


def sanitize_string(value: Any, max_length: int = 1000, escape_quotes: bool = True) -> str | None:
    """Strip null bytes, trim, cap length and optionally double single quotes."""
    if value is None or value == "":
        return None

    if not isinstance(value, str):
        value = str(value)

    value = value.replace("\0", "").strip()[:max_length]

    if escape_quotes:
        value = value.replace("'", "''")

    return value or None


def parse_datetime(value: Any, field: str = "date") -> datetime | None:
    """Parse ISO-8601 or JIRA-style timestamps into aware UTC datetimes."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _BASIC_OFFSET.sub(r"\1:\2", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid date: {value}", field=field) from None
    else:
        raise ValidationError(f"Invalid date: {value!r}", field=field)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def validate_date(value: Any, field: str = "date") -> datetime | None:
    """Parse a date and reject values implausibly far in the past or future."""
    parsed = parse_datetime(value, field)
    if parsed is None:
        return None

    now = datetime.now(UTC)
    if parsed < now - MAX_PAST or parsed > now + MAX_FUTURE:
        raise ValidationError(f"Date out of reasonable range: {value}", field=field)

    return parsed


def validate_json(value: Any, max_size: int = 50_000, field: str = "json") -> str:
    """Return a syntactically valid JSON document no larger than max_size."""
    if value is None or value == "":
        return "{}"

    if not isinstance(value, str):
        try:
            value = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid JSON: {e}", field=field) from e

    if len(value) > max_size:
        raise ValidationError(f"JSON too large: {len(value)} bytes (max: {max_size})", field=field)

    try:
        json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e.msg}", field=field) from e

    return value


def validate_string_array(
    values: Any,
    max_items: int = 100,
    max_item_length: int = 200,
    field: str = "array",
) -> list[str]:
    """Bound an array and sanitize each item."""
    if not values:
        return []

    if not isinstance(values, (list, tuple)):
        raise ValidationError("Invalid array: must be an array", field=field)

    if len(values) > max_items:
        raise ValidationError(f"Array too large: {len(values)} items (max: {max_items})", field=field)

    sanitized = (sanitize_string(item, max_item_length, escape_quotes=False) for item in values if item is not None)
    return [item for item in sanitized if item is not None]


def validate_pagination(limit: Any, offset: Any) -> tuple[int, int]:
    """Clamp limit to 1..10000 and offset to 0..1000000."""
    try:
        validated_limit = int(limit)
    except (TypeError, ValueError):
        validated_limit = 100
    validated_limit = min(max(validated_limit or 100, 1), 10_000)

    try:
        validated_offset = max(int(offset), 0)
    except (TypeError, ValueError):
        validated_offset = 0

    if validated_offset > 1_000_000:
        raise ValidationError("Offset too large", field="offset")

    return validated_limit, validated_offset


def safe_sql_identifier(identifier: Any) -> str:
    """Whitelist a caller-influenced table or column name."""
    if not identifier or not isinstance(identifier, str):
        raise ValidationError("Invalid SQL identifier", field="identifier")

    if not SQL_IDENTIFIER_PATTERN.fullmatch(identifier):
        raise ValidationError(f"Invalid SQL identifier: {identifier}", field="identifier")

    return identifier


def validate_sync_options(options: dict[str, Any] | None) -> SyncOptions:
    """Validate the options of a sync request."""
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise ValidationError(f"Invalid options: expected an object, got {type(options).__name__}", field="options")
    errors: list[str] = []
    validated: dict[str, Any] = {}

    updated_since = options.get("updated_since", options.get("updatedSince"))
    if updated_since:
        try:
            validated["updated_since"] = validate_date(updated_since, field="updated_since")
        except ValidationError as e:
            errors.extend(e.errors)

    custom_jql = options.get("custom_jql", options.get("customJQL"))
    if custom_jql:
        jql = sanitize_string(custom_jql, 500, escape_quotes=False)
        if jql and any(marker in jql.lower() for marker in SUSPICIOUS_FILTER_MARKERS):
            errors.append("custom_jql: Invalid JQL: suspicious content detected")
        else:
            validated["custom_jql"] = jql

    excluded_types = options.get("excluded_types", options.get("excludedTypes"))
    if excluded_types is not None:
        if not isinstance(excluded_types, (list, tuple)):
            errors.append("excluded_types: excludedTypes must be an array")
        else:
            validated["excluded_types"] = [
                item
                for item in (sanitize_string(t, 50, escape_quotes=False) for t in list(excluded_types)[:20])
                if item is not None
            ]

    if "incremental" in options:
        validated["incremental"] = bool(options["incremental"])

    if errors:
        raise ValidationError(f"Invalid sync options: {', '.join(errors)}", errors=errors)

    return SyncOptions(**validated)


def validate_record_for_storage(record: Ticket, owner_id: Any) -> tuple[Ticket, int]:
    """Validate a normalized record and its owning client, reporting every problem at once."""
    errors: list[str] = []
    cleaned: dict[str, Any] = {}

    def collect(func, *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            errors.extend(e.errors)
            return None

    cleaned["key"] = collect(validate_record_key, record.key)
    owner = collect(validate_positive_int, owner_id, "owner_id")

    summary = sanitize_string(record.summary, 1000, escape_quotes=False)
    if not summary:
        errors.append("summary: required field missing")
    cleaned["summary"] = summary

    cleaned["description"] = sanitize_string(record.description, 50_000, escape_quotes=False)
    for name in ("status", "priority", "issue_type", "assignee", "assignee_email", "reporter"):
        cleaned[name] = sanitize_string(getattr(record, name), 255, escape_quotes=False)
    for name in ("customer_priority", "internal_priority", "sla", "severity"):
        cleaned[name] = sanitize_string(getattr(record, name), 255, escape_quotes=False)

    for name in ("created", "updated", "resolved"):
        cleaned[name] = collect(validate_date, getattr(record, name), name)

    cleaned["labels"] = collect(validate_string_array, record.labels, field="labels") or []
    cleaned["components"] = collect(validate_string_array, record.components, field="components") or []
    if collect(validate_json, record.custom_fields, field="custom_fields") is None:
        cleaned["custom_fields"] = {}

    if record.original_estimate_hours is not None and record.original_estimate_hours < 0:
        errors.append("original_estimate_hours: must not be negative")

    if errors:
        raise ValidationError(f"Record validation failed: {', '.join(errors)}", errors=errors)

    return record.model_copy(update=cleaned), owner
