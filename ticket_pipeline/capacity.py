"""Derived workload, utilization and client expertise metrics."""

import calendar
import json
import math
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError as ModelValidationError

from .config import ExpertiseConfig
from .errors import ValidationError
from .models import Assignment, ClientExpertise, ExpertiseTier, PersonLoad
from .storage import StorageAdapter
from .validation import validate_positive_int

logger = structlog.get_logger()

CONFIG_ROW_ID = 1

_OPEN_LOADS = """
SELECT p.id AS person_id,
       p.weekly_capacity AS weekly_capacity,
       COALESCE(SUM(a.assigned_hours), 0) AS load_hours
FROM people p
LEFT JOIN ticket_assignments a ON a.person_id = p.id AND a.completed_at IS NULL
WHERE p.is_active = 1
GROUP BY p.id, p.weekly_capacity
"""


def utilization_percent(load_hours: float, weekly_capacity: float) -> int:
    """Load as a whole percentage of capacity, rounding halves up; 0 without capacity."""
    if not weekly_capacity or weekly_capacity <= 0:
        return 0
    return math.floor(load_hours / weekly_capacity * 100 + 0.5)


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class CapacityEngine:
    """Computes per-person load and client expertise from assignment rows."""

    def __init__(self, storage: StorageAdapter, config: ExpertiseConfig | None = None) -> None:
        """Initialize capacity engine."""
        self.storage = storage
        self.config = config or ExpertiseConfig()

    def load_for(self, person_id: int) -> PersonLoad:
        person_id = validate_positive_int(person_id, "person_id")
        person = self._person(person_id)

        row = self.storage.get(
            "SELECT COALESCE(SUM(assigned_hours), 0) AS load_hours FROM ticket_assignments "
            "WHERE person_id = :person_id AND completed_at IS NULL",
            {"person_id": person_id},
        )
        load_hours = float(row["load_hours"]) if row else 0.0
        capacity = float(person["weekly_capacity"] or 0)

        return PersonLoad(
            person_id=person_id,
            current_load_hours=load_hours,
            weekly_capacity=capacity,
            utilization_percent=utilization_percent(load_hours, capacity),
        )

    def team_utilization(self) -> list[PersonLoad]:
        """Load of every active person.

        The analytical backend also reports each person's share of the team's
        total open hours.
        """
        if self.storage.supports_analytics:
            rows = self.storage.run_analytics(
                f"WITH loads AS ({_OPEN_LOADS}) "
                "SELECT person_id, weekly_capacity, load_hours, "
                "load_hours / NULLIF(SUM(load_hours) OVER (), 0) AS share "
                "FROM loads ORDER BY person_id"
            )
        else:
            rows = self.storage.all(f"{_OPEN_LOADS} ORDER BY p.id")

        loads = []
        for row in rows:
            load_hours = float(row["load_hours"] or 0)
            capacity = float(row["weekly_capacity"] or 0)
            share = row.get("share")
            loads.append(
                PersonLoad(
                    person_id=int(row["person_id"]),
                    current_load_hours=load_hours,
                    weekly_capacity=capacity,
                    utilization_percent=utilization_percent(load_hours, capacity),
                    share_of_team_load=round(float(share), 4) if share is not None else None,
                )
            )
        return loads

    def classify(self, hours: float) -> ExpertiseTier:
        if hours >= self.config.expert_threshold:
            return ExpertiseTier.EXPERT
        if hours >= self.config.intermediate_threshold:
            return ExpertiseTier.INTERMEDIATE
        return ExpertiseTier.NOVICE

    def expertise_for(self, person_id: int, client_id: int, now: datetime | None = None) -> ClientExpertise:
        """Hours a person worked for one client inside the lookback window."""
        person_id = validate_positive_int(person_id, "person_id")
        client_id = validate_positive_int(client_id, "client_id")

        rows = self._expertise_rows(person_id, now, client_id=client_id)
        if rows:
            return self._to_expertise(person_id, rows[0])

        client = self.storage.get("SELECT name FROM clients WHERE id = :id", {"id": client_id})
        return ClientExpertise(
            person_id=person_id,
            client_id=client_id,
            client_name=client["name"] if client else None,
            hours_worked=0.0,
            tier=self.classify(0.0),
        )

    def expertise_profile(self, person_id: int, now: datetime | None = None) -> list[ClientExpertise]:
        """Every client the person worked for in the window, most hours first."""
        person_id = validate_positive_int(person_id, "person_id")
        return [self._to_expertise(person_id, row) for row in self._expertise_rows(person_id, now)]

    def assign(
        self,
        ticket_key: str,
        person_id: int,
        hours: float,
        assigned_at: datetime | None = None,
    ) -> Assignment:
        """Assign a person to a ticket, replacing any earlier assignment of the pair."""
        person_id = validate_positive_int(person_id, "person_id")
        if hours is None or hours < 0:
            raise ValidationError("Assigned hours must be zero or positive", field="assigned_hours")
        self._person(person_id)

        assignment = Assignment(
            ticket_key=ticket_key,
            person_id=person_id,
            assigned_hours=float(hours),
            assigned_at=_utc(assigned_at or datetime.now(UTC)),
        )
        self.storage.upsert(
            "ticket_assignments",
            {
                "ticket_key": assignment.ticket_key,
                "person_id": assignment.person_id,
                "assigned_hours": assignment.assigned_hours,
                "assigned_at": assignment.assigned_at,
                "completed_at": None,
            },
            ["ticket_key", "person_id"],
        )
        logger.info("Assignment recorded", ticket_key=ticket_key, person_id=person_id, hours=hours)
        return assignment

    def complete(self, ticket_key: str, person_id: int, completed_at: datetime | None = None) -> bool:
        """Close an open assignment; False when there was none."""
        result = self.storage.run(
            "UPDATE ticket_assignments SET completed_at = :completed_at "
            "WHERE ticket_key = :ticket_key AND person_id = :person_id AND completed_at IS NULL",
            {
                "completed_at": _utc(completed_at or datetime.now(UTC)),
                "ticket_key": ticket_key,
                "person_id": person_id,
            },
        )
        return result.change_count > 0

    def update_config(self, **changes: Any) -> ExpertiseConfig:
        """Validate and persist a new expertise configuration."""
        try:
            new_config = ExpertiseConfig(**{**self.config.model_dump(), **changes})
        except (ModelValidationError, TypeError) as e:
            raise ValidationError(f"Invalid expertise configuration: {e}", field="expertise_config") from e

        self.storage.upsert(
            "people_config",
            {
                "id": CONFIG_ROW_ID,
                "expertise_config": json.dumps(_to_stored(new_config)),
                "last_updated": datetime.now(UTC),
            },
            ["id"],
        )
        self.config = new_config
        logger.info("Expertise configuration updated", **new_config.model_dump())
        return new_config

    def load_persisted_config(self) -> ExpertiseConfig:
        """Replace the in-memory configuration with the stored one, if any."""
        row = self.storage.get("SELECT expertise_config FROM people_config WHERE id = :id", {"id": CONFIG_ROW_ID})
        if row is None:
            return self.config

        try:
            self.config = _from_stored(json.loads(row["expertise_config"]))
        except (ValueError, KeyError, TypeError, ModelValidationError) as e:
            logger.warning("Ignoring invalid stored expertise configuration", error=str(e))
        return self.config

    def _person(self, person_id: int) -> dict[str, Any]:
        person = self.storage.get("SELECT id, weekly_capacity FROM people WHERE id = :id", {"id": person_id})
        if person is None:
            raise ValidationError(f"Person {person_id} not found", field="person_id")
        return person

    def _expertise_rows(self, person_id: int, now: datetime | None, client_id: int | None = None) -> list[dict]:
        cutoff = subtract_months(_utc(now or datetime.now(UTC)), self.config.lookback_months)
        query = (
            "SELECT t.client_id AS client_id, c.name AS client_name, "
            "SUM(a.assigned_hours) AS hours_worked, MAX(a.assigned_at) AS last_assignment "
            "FROM ticket_assignments a "
            "JOIN tickets t ON t.ticket_key = a.ticket_key "
            "LEFT JOIN clients c ON c.id = t.client_id "
            "WHERE a.person_id = :person_id AND a.assigned_at >= :cutoff"
        )
        params: dict[str, Any] = {"person_id": person_id, "cutoff": cutoff}
        if client_id is not None:
            query += " AND t.client_id = :client_id"
            params["client_id"] = client_id
        query += " GROUP BY t.client_id, c.name ORDER BY hours_worked DESC, t.client_id"
        return self.storage.all(query, params)

    def _to_expertise(self, person_id: int, row: dict[str, Any]) -> ClientExpertise:
        hours = float(row["hours_worked"] or 0)
        last = row.get("last_assignment")
        return ClientExpertise(
            person_id=person_id,
            client_id=int(row["client_id"]),
            client_name=row.get("client_name"),
            hours_worked=hours,
            tier=self.classify(hours),
            last_assignment=datetime.fromisoformat(last) if isinstance(last, str) else last,
        )


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_stored(config: ExpertiseConfig) -> dict[str, Any]:
    return {
        "calculationPeriod": "months",
        "periodValue": config.lookback_months,
        "thresholds": {
            "expert": config.expert_threshold,
            "intermediate": config.intermediate_threshold,
            "novice": 0,
        },
    }


def _from_stored(data: dict[str, Any]) -> ExpertiseConfig:
    if data.get("calculationPeriod", "months") != "months":
        raise ValueError(f"Unsupported calculation period: {data['calculationPeriod']}")
    thresholds = data["thresholds"]
    return ExpertiseConfig(
        lookback_months=data["periodValue"],
        expert_threshold=thresholds["expert"],
        intermediate_threshold=thresholds["intermediate"],
    )


