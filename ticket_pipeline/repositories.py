"""Record-level persistence built on the storage adapter."""

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from .models import RecordError, SyncOptions, SyncSession, SyncState, Ticket
from .storage import StorageAdapter
from .validation import validate_pagination

logger = structlog.get_logger()


def project_set_key(projects: Iterable[str]) -> str:
    """Canonical string form of a project set."""
    return ",".join(sorted(set(projects)))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class TicketRepository:
    """Clients, tickets and ticket-driven assignment updates."""

    def __init__(self, storage: StorageAdapter) -> None:
        """Initialize ticket repository."""
        self.storage = storage

    def ensure_client(self, project_key: str, name: str | None = None) -> int:
        """Return the id of the client owning a project, creating it on first sight."""
        with self.storage.transaction():
            row = self.storage.get(
                "SELECT id FROM clients WHERE project_key = :project_key", {"project_key": project_key}
            )
            if row:
                return int(row["id"])

            next_row = self.storage.get("SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM clients")
            client_id = int(next_row["next_id"])
            self.storage.run(
                "INSERT INTO clients (id, name, project_key, created_at) "
                "VALUES (:id, :name, :project_key, :created_at)",
                {
                    "id": client_id,
                    "name": name or project_key,
                    "project_key": project_key,
                    "created_at": datetime.now(UTC),
                },
            )

        logger.info("Created new client for project", project=project_key, client_id=client_id)
        return client_id

    def mark_client_synced(self, project_key: str, synced_at: datetime) -> None:
        self.storage.run(
            "UPDATE clients SET last_synced = :synced_at WHERE project_key = :project_key",
            {"synced_at": synced_at, "project_key": project_key},
        )

    def upsert_ticket(self, ticket: Ticket, client_id: int, session_id: str | None = None) -> int:
        """Insert or update a ticket keyed by its record key."""
        row = {
            "ticket_key": ticket.key,
            "client_id": client_id,
            "project_key": ticket.project_key,
            "summary": ticket.summary,
            "description": ticket.description,
            "status": ticket.status,
            "priority": ticket.priority,
            "issue_type": ticket.issue_type,
            "assignee": ticket.assignee,
            "assignee_email": ticket.assignee_email,
            "reporter": ticket.reporter,
            "customer_priority": ticket.customer_priority,
            "internal_priority": ticket.internal_priority,
            "sla": ticket.sla,
            "severity": ticket.severity,
            "original_estimate_hours": ticket.original_estimate_hours,
            "labels": json.dumps(ticket.labels),
            "components": json.dumps(ticket.components),
            "custom_fields": json.dumps(ticket.custom_fields, default=str),
            "jira_created": _iso(ticket.created),
            "jira_updated": _iso(ticket.updated),
            "resolved_at": _iso(ticket.resolved),
            "last_synced": datetime.now(UTC).isoformat(),
            "session_id": session_id,
        }
        return self.storage.upsert("tickets", row, ["ticket_key"]).change_count

    def get_ticket(self, ticket_key: str) -> dict[str, Any] | None:
        row = self.storage.get("SELECT * FROM tickets WHERE ticket_key = :key", {"key": ticket_key})
        if row is None:
            return None
        for column in ("labels", "components", "custom_fields"):
            if row.get(column):
                row[column] = json.loads(row[column])
        return row

    def count_tickets(self, project_key: str | None = None) -> int:
        if project_key:
            row = self.storage.get(
                "SELECT COUNT(*) AS n FROM tickets WHERE project_key = :project_key",
                {"project_key": project_key},
            )
        else:
            row = self.storage.get("SELECT COUNT(*) AS n FROM tickets")
        return int(row["n"]) if row else 0

    def find_person_by_email(self, email: str | None) -> int | None:
        if not email:
            return None
        row = self.storage.get(
            "SELECT id FROM people WHERE LOWER(email) = LOWER(:email) AND is_active = 1",
            {"email": email},
        )
        return int(row["id"]) if row else None

    def upsert_assignment(
        self,
        ticket_key: str,
        person_id: int,
        assigned_hours: float | None,
        assigned_at: datetime,
    ) -> None:
        """Create or refresh a (ticket, person) assignment; hours stay put when None.

        A previously closed assignment for the same pair is reopened.
        """
        params = {"ticket_key": ticket_key, "person_id": person_id}
        with self.storage.transaction():
            existing = self.storage.get(
                "SELECT assigned_hours FROM ticket_assignments "
                "WHERE ticket_key = :ticket_key AND person_id = :person_id",
                params,
            )
            if existing is None:
                self.storage.run(
                    "INSERT INTO ticket_assignments (ticket_key, person_id, assigned_hours, assigned_at) "
                    "VALUES (:ticket_key, :person_id, :hours, :assigned_at)",
                    {**params, "hours": float(assigned_hours or 0), "assigned_at": assigned_at},
                )
                return

            hours = float(assigned_hours) if assigned_hours is not None else existing["assigned_hours"]
            self.storage.run(
                "UPDATE ticket_assignments SET assigned_hours = :hours, completed_at = NULL "
                "WHERE ticket_key = :ticket_key AND person_id = :person_id",
                {**params, "hours": hours},
            )

    def release_assignments(self, ticket_key: str, keep_person_id: int | None, released_at: datetime) -> int:
        """Close open assignments of a ticket held by anyone other than its current assignee."""
        query = (
            "UPDATE ticket_assignments SET completed_at = :released_at "
            "WHERE ticket_key = :ticket_key AND completed_at IS NULL"
        )
        params: dict[str, Any] = {"ticket_key": ticket_key, "released_at": released_at}
        if keep_person_id is not None:
            query += " AND person_id <> :person_id"
            params["person_id"] = keep_person_id

        released = self.storage.run(query, params).change_count
        if released:
            logger.info("Released previous assignments", ticket=ticket_key, released=released)
        return released

    def complete_assignments_for(self, ticket_key: str, completed_at: datetime) -> int:
        """Close every open assignment of a resolved ticket."""
        return self.storage.run(
            "UPDATE ticket_assignments SET completed_at = :completed_at "
            "WHERE ticket_key = :ticket_key AND completed_at IS NULL",
            {"completed_at": completed_at, "ticket_key": ticket_key},
        ).change_count

    def statistics(self, top_clients: int = 10) -> dict[str, Any]:
        """Ticket totals, status distribution and the clients with the most tickets."""
        totals = self.storage.get(
            "SELECT COUNT(DISTINCT client_id) AS total_clients, COUNT(DISTINCT status) AS unique_statuses, "
            "MIN(jira_created) AS oldest_ticket, MAX(jira_updated) AS latest_update FROM tickets"
        ) or {}
        by_status = self.storage.all(
            "SELECT COALESCE(status, 'Unknown') AS status, COUNT(*) AS count FROM tickets "
            "GROUP BY COALESCE(status, 'Unknown') ORDER BY count DESC, status"
        )
        clients = self.storage.all(
            "SELECT c.name AS name, c.project_key AS project_key, COUNT(t.ticket_key) AS ticket_count "
            "FROM clients c JOIN tickets t ON t.client_id = c.id "
            "GROUP BY c.id, c.name, c.project_key ORDER BY ticket_count DESC, c.name LIMIT :limit",
            {"limit": top_clients},
        )
        return {
            "total_tickets": self.count_tickets(),
            "total_clients": int(totals.get("total_clients") or 0),
            "unique_statuses": int(totals.get("unique_statuses") or 0),
            "oldest_ticket": totals.get("oldest_ticket"),
            "latest_update": totals.get("latest_update"),
            "status_distribution": {row["status"]: int(row["count"]) for row in by_status},
            "top_clients": [
                {"name": row["name"], "project_key": row["project_key"], "ticket_count": int(row["ticket_count"])}
                for row in clients
            ],
        }


class SessionRepository:
    """Durable audit trail of sync sessions."""

    def __init__(self, storage: StorageAdapter) -> None:
        """Initialize session repository."""
        self.storage = storage

    def save(self, session: SyncSession) -> None:
        row = {
            "id": session.id,
            "project_set": project_set_key(session.projects),
            "state": session.state.value,
            "options": session.options.model_dump_json(),
            "fetched": session.fetched,
            "upserted": session.upserted,
            "errored": session.errored,
            "current_project": session.current_project,
            "percent_complete": session.percent_complete,
            "fatal_error": session.fatal_error,
            "created_at": _iso(session.created_at),
            "started_at": _iso(session.started_at),
            "completed_at": _iso(session.completed_at),
        }
        self.storage.upsert("sync_sessions", row, ["id"])

    def record_error(self, session_id: str, error: RecordError) -> None:
        self.storage.run(
            "INSERT INTO sync_record_errors (session_id, record_key, error, occurred_at) "
            "VALUES (:session_id, :record_key, :error, :occurred_at)",
            {
                "session_id": session_id,
                "record_key": error.record_key,
                "error": error.error,
                "occurred_at": error.occurred_at,
            },
        )

    def get(self, session_id: str) -> SyncSession | None:
        row = self.storage.get("SELECT * FROM sync_sessions WHERE id = :id", {"id": session_id})
        if row is None:
            return None

        errors = self.storage.all(
            "SELECT record_key, error, occurred_at FROM sync_record_errors "
            "WHERE session_id = :session_id ORDER BY occurred_at",
            {"session_id": session_id},
        )
        return SyncSession(
            id=row["id"],
            projects=row["project_set"].split(",") if row["project_set"] else [],
            options=SyncOptions.model_validate_json(row["options"] or "{}"),
            state=SyncState(row["state"]),
            fetched=row["fetched"] or 0,
            upserted=row["upserted"] or 0,
            errored=row["errored"] or 0,
            current_project=row["current_project"],
            percent_complete=row["percent_complete"] or 0,
            errors=[
                RecordError(record_key=e["record_key"], error=e["error"], occurred_at=_parse(e["occurred_at"]))
                for e in errors
            ],
            fatal_error=row["fatal_error"],
            created_at=_parse(row["created_at"]),
            started_at=_parse(row["started_at"]),
            completed_at=_parse(row["completed_at"]),
        )

    def last_completed(self, projects: Iterable[str] | None = None) -> datetime | None:
        """Completion time of the most recent completed session, over a project set or any set."""
        query = "SELECT completed_at FROM sync_sessions WHERE state = :state"
        params: dict[str, Any] = {"state": SyncState.COMPLETED.value}
        if projects is not None:
            query += " AND project_set = :project_set"
            params["project_set"] = project_set_key(projects)

        row = self.storage.get(query + " ORDER BY completed_at DESC LIMIT 1", params)
        return _parse(row["completed_at"]) if row else None

    def mark_interrupted(self) -> int:
        """Fail sessions left running by a previous process."""
        return self.storage.run(
            "UPDATE sync_sessions SET state = :failed, fatal_error = :error, completed_at = :now "
            "WHERE state IN (:pending, :running)",
            {
                "failed": SyncState.FAILED.value,
                "error": "Interrupted by process restart",
                "now": datetime.now(UTC),
                "pending": SyncState.PENDING.value,
                "running": SyncState.RUNNING.value,
            },
        ).change_count

    def cleanup(self, older_than: datetime) -> int:
        """Delete terminal sessions completed before a cutoff."""
        cutoff = older_than.isoformat()
        with self.storage.transaction():
            self.storage.run(
                "DELETE FROM sync_record_errors WHERE session_id IN "
                "(SELECT id FROM sync_sessions WHERE completed_at IS NOT NULL AND completed_at < :cutoff)",
                {"cutoff": cutoff},
            )
            return self.storage.run(
                "DELETE FROM sync_sessions WHERE completed_at IS NOT NULL AND completed_at < :cutoff",
                {"cutoff": cutoff},
            ).change_count

    def recent(self, limit: Any = 50, offset: Any = 0) -> list[dict[str, Any]]:
        """One page of stored session rows, newest first."""
        limit, offset = validate_pagination(limit, offset)
        return self.storage.all(
            "SELECT * FROM sync_sessions ORDER BY created_at DESC LIMIT :limit OFFSET :offset",
            {"limit": limit, "offset": offset},
        )
