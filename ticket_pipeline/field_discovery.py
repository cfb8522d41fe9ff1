"""Discovery of tenant-specific custom field identifiers."""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from .errors import ExternalServiceError
from .jira_client import JiraClient
from .models import FieldMapping, FieldValue, MultiSelectValue, OptionValue, ScalarValue, SemanticField

logger = structlog.get_logger()

BASE_FIELDS = (
    "key",
    "summary",
    "description",
    "priority",
    "status",
    "project",
    "issuetype",
    "created",
    "updated",
    "assignee",
    "reporter",
    "labels",
    "components",
    "duedate",
    "resolution",
    "resolutiondate",
    "timeoriginalestimate",
)


@dataclass(frozen=True)
class MatchRule:
    """How to recognise one semantic field in a tenant's field catalog.

    Exact names are tried first against every field. The heuristic only looks at
    custom fields: the lowercased name must match every pattern in ``patterns``.
    """

    semantic: SemanticField
    exact_names: tuple[str, ...] = ()
    patterns: tuple[re.Pattern[str], ...] = field(default_factory=tuple)

    def matches_exact(self, name: str) -> bool:
        return name in self.exact_names

    def matches_heuristic(self, name: str) -> bool:
        lowered = name.lower()
        return bool(self.patterns) and all(p.search(lowered) for p in self.patterns)


DEFAULT_RULES: tuple[MatchRule, ...] = (
    MatchRule(
        SemanticField.CUSTOMER_PRIORITY,
        exact_names=("Customer Prio[Dropdown]", "Customer Prio", "Customer Priority"),
        patterns=(re.compile(r"customer"), re.compile(r"prio")),
    ),
    MatchRule(
        SemanticField.INTERNAL_PRIORITY,
        exact_names=("MGX Prio[Dropdown]", "MGX Prio", "MGX Priority", "Internal Prio", "Internal Priority"),
        patterns=(re.compile(r"mgx|internal"), re.compile(r"prio")),
    ),
    MatchRule(
        SemanticField.SLA,
        exact_names=("SLA",),
        patterns=(re.compile(r"\bsla\b"),),
    ),
    MatchRule(
        SemanticField.SEVERITY,
        exact_names=("Severity",),
        patterns=(re.compile(r"severity"),),
    ),
)


class FieldDiscoveryService:
    """Builds and caches the semantic field mapping for one sync session."""

    def __init__(self, client: JiraClient, rules: Sequence[MatchRule] = DEFAULT_RULES) -> None:
        """Initialize field discovery."""
        self.client = client
        self.rules = tuple(rules)
        self._mapping: FieldMapping | None = None

    @property
    def mapping(self) -> FieldMapping:
        return self._mapping or FieldMapping()

    def discover(self) -> FieldMapping:
        """Fetch the field catalog once and map semantic fields to identifiers."""
        if self._mapping is not None:
            return self._mapping

        try:
            catalog = self.client.get_fields()
        except ExternalServiceError as e:
            logger.error("Field discovery failed, continuing without custom fields", error=str(e))
            return FieldMapping()

        self._mapping = map_fields(catalog, self.rules)
        logger.info(
            "Field discovery completed",
            mapped={k.value: v for k, v in self._mapping.fields.items()},
            warnings=len(self._mapping.warnings),
        )
        for warning in self._mapping.warnings:
            logger.warning("Ambiguous field match", detail=warning)
        return self._mapping

    def fields_list(self) -> list[str]:
        """Base fields plus every discovered identifier, without duplicates."""
        fields = list(BASE_FIELDS)
        for field_id in sorted(self.mapping.identifiers()):
            if field_id and field_id not in fields:
                fields.append(field_id)
        return fields

    def extract_value(self, issue: dict[str, Any], semantic: SemanticField) -> Any:
        """Return the scalar value of a semantic field on a raw issue, or None."""
        field_id = self.mapping.get(semantic)
        if not field_id:
            return None
        fields = issue.get("fields")
        raw = fields.get(field_id) if isinstance(fields, dict) else None
        return normalize_field_value(to_field_value(raw))


def map_fields(catalog: Sequence[dict[str, Any]], rules: Sequence[MatchRule] = DEFAULT_RULES) -> FieldMapping:
    """Evaluate match rules against a field catalog deterministically.

    For each rule the first exact-name match in catalog order wins; without one,
    the first heuristic match wins. Any further candidates are reported as warnings.
    """
    mapping = FieldMapping()
    usable = [f for f in catalog if isinstance(f, dict) and f.get("id") and f.get("name")]
    if len(usable) < len(catalog):
        logger.warning("Skipping field catalog entries without id or name", skipped=len(catalog) - len(usable))

    for rule in rules:
        exact = [f for f in usable if rule.matches_exact(f["name"])]
        candidates = exact or [f for f in usable if _is_custom(f) and rule.matches_heuristic(f["name"])]
        if not candidates:
            continue

        chosen = candidates[0]
        mapping.fields[rule.semantic] = chosen["id"]
        for other in candidates[1:]:
            mapping.warnings.append(
                f"{rule.semantic.value}: using {chosen['name']} ({chosen['id']}), "
                f"ignoring {other['name']} ({other['id']})"
            )

    return mapping


def to_field_value(raw: Any) -> FieldValue | None:
    """Classify a raw custom field value into one of the known shapes."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return OptionValue(value=_option_text(raw), option_id=_as_str(raw.get("id")))
    if isinstance(raw, list):
        return MultiSelectValue(values=[_option_text(item) if isinstance(item, dict) else item for item in raw])
    if isinstance(raw, (str, int, float, bool)):
        return ScalarValue(value=raw)
    return ScalarValue(value=str(raw))


def normalize_field_value(value: FieldValue | None) -> Any:
    """Collapse a field value to a single scalar or None."""
    if isinstance(value, ScalarValue):
        return None if value.value == "" else value.value
    if isinstance(value, OptionValue):
        return value.value or None
    if isinstance(value, MultiSelectValue):
        return value.values[0] if value.values else None
    return None


def _option_text(option: dict[str, Any]) -> str | None:
    text = option.get("value", option.get("name"))
    return _as_str(text)


def _as_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _is_custom(field_def: dict[str, Any]) -> bool:
    if "custom" in field_def:
        return bool(field_def["custom"])
    return str(field_def.get("id", "")).startswith("customfield_")
