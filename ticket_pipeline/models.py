"""Data models for the ticket ingestion pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class SemanticField(str, Enum):
    """Business-meaningful attributes whose tracker field id varies per tenant."""

    CUSTOMER_PRIORITY = "customer_priority"
    INTERNAL_PRIORITY = "internal_priority"
    SLA = "sla"
    SEVERITY = "severity"


class ScalarValue(BaseModel):
    """Plain text or numeric custom field value."""

    kind: Literal["scalar"] = "scalar"
    value: str | int | float | bool | None


class OptionValue(BaseModel):
    """Single-select option object."""

    kind: Literal["option"] = "option"
    value: str | None
    option_id: str | None = None


class MultiSelectValue(BaseModel):
    """Multi-select array of options or plain values."""

    kind: Literal["multi"] = "multi"
    values: list[str | int | float | None] = Field(default_factory=list)


FieldValue = ScalarValue | OptionValue | MultiSelectValue


class FieldMapping(BaseModel):
    """Semantic field to tracker field id, discovered once per session."""

    fields: dict[SemanticField, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list, description="Ambiguous matches that were not used")

    def get(self, semantic: SemanticField) -> str | None:
        return self.fields.get(semantic)

    def identifiers(self) -> list[str]:
        return list(self.fields.values())


class Ticket(BaseModel):
    """Standardized tracker record representation."""

    key: str
    project_key: str
    summary: str
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    issue_type: str | None = None
    assignee: str | None = None
    assignee_email: str | None = None
    reporter: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    resolved: datetime | None = None
    labels: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list)
    original_estimate_hours: float | None = None
    customer_priority: str | None = None
    internal_priority: str | None = None
    sla: str | None = None
    severity: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class SyncState(str, Enum):
    """Lifecycle of a sync session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.COMPLETED, SyncState.FAILED)


class SyncOptions(BaseModel):
    """Validated options for one sync run."""

    updated_since: datetime | None = None
    custom_jql: str | None = None
    excluded_types: list[str] | None = None
    incremental: bool = False


class RecordError(BaseModel):
    """Error recorded against a single record during a session."""

    record_key: str | None
    error: str
    occurred_at: datetime


class ProgressEvent(BaseModel):
    """Progress record published to session subscribers."""

    sequence: int
    session_id: str
    state: SyncState
    fetched: int = 0
    upserted: int = 0
    errored: int = 0
    current_project: str | None = None
    percent_complete: int = 0
    error: str | None = None
    errors: list[RecordError] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class SyncSession(BaseModel):
    """One ingestion run over a project set."""

    id: str
    projects: list[str]
    options: SyncOptions
    state: SyncState = SyncState.PENDING
    fetched: int = 0
    upserted: int = 0
    errored: int = 0
    current_project: str | None = None
    percent_complete: int = 0
    errors: list[RecordError] = Field(default_factory=list)
    fatal_error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def project_set(self) -> frozenset[str]:
        return frozenset(self.projects)


class ExpertiseTier(str, Enum):
    """Ordered client expertise tiers."""

    NOVICE = "Novice"
    INTERMEDIATE = "Intermediate"
    EXPERT = "Expert"


class Assignment(BaseModel):
    """Person assigned to a record."""

    ticket_key: str
    person_id: int
    assigned_hours: float = 0
    assigned_at: datetime
    completed_at: datetime | None = None


class PersonLoad(BaseModel):
    """Current load of one person."""

    person_id: int
    current_load_hours: float
    weekly_capacity: float
    utilization_percent: int
    share_of_team_load: float | None = None


class ClientExpertise(BaseModel):
    """Hours worked for one client within the lookback window."""

    person_id: int
    client_id: int
    client_name: str | None = None
    hours_worked: float
    tier: ExpertiseTier
    last_assignment: datetime | None = None
