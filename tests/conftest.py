"""Shared fixtures for pipeline tests."""

from __future__ import annotations

import re
import threading

import pytest

from ticket_pipeline.errors import ExternalServiceError
from ticket_pipeline.storage import StorageAdapter

FIELD_CATALOG = [
    {"id": "summary", "name": "Summary", "custom": False},
    {"id": "customfield_10001", "name": "Customer Prio[Dropdown]", "custom": True},
    {"id": "customfield_10002", "name": "MGX Prio", "custom": True},
    {"id": "customfield_10003", "name": "SLA", "custom": True},
    {"id": "customfield_10004", "name": "Severity", "custom": True},
]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTrackerClient:
    """In-memory stand-in for JiraClient used by orchestrator and handler tests."""

    base_url = "https://example.atlassian.net"

    def __init__(self, issues_by_project=None, catalog=None, projects=None) -> None:
        self.issues_by_project = issues_by_project or {}
        self.projects = projects
        self.catalog = FIELD_CATALOG if catalog is None else catalog
        self.searches: list[dict] = []
        self.gate: threading.Event | None = None
        self.search_error: Exception | None = None

    def get_fields(self):
        return list(self.catalog)

    def get_projects(self):
        keys = self.projects if self.projects is not None else sorted(self.issues_by_project)
        return [{"key": key, "name": f"Project {key}", "id": str(n)} for n, key in enumerate(keys, start=1)]

    def test_connection(self):
        return {"displayName": "Sync Bot"}

    def search_page(self, jql, start_at=0, max_results=100, fields=None):
        self.searches.append({"jql": jql, "start_at": start_at, "max_results": max_results, "fields": fields})
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.search_error is not None:
            raise self.search_error

        project = re.search(r'project = "([^"]+)"', jql).group(1)
        issues = self.issues_by_project.get(project, [])
        return {
            "issues": issues[start_at : start_at + max_results],
            "total": len(issues),
            "startAt": start_at,
        }


def make_issue(key: str, summary: str = "Example ticket", **fields) -> dict:
    project = key.rsplit("-", 1)[0]
    issue_fields = {
        "summary": summary,
        "status": {"name": "Open"},
        "priority": {"name": "High"},
        "issuetype": {"name": "Bug"},
        "project": {"key": project},
        "created": "2024-05-01T10:00:00.000+0000",
        "updated": "2024-05-02T10:00:00.000+0000",
        "labels": [],
        "components": [],
    }
    issue_fields.update(fields)
    return {"key": key, "fields": issue_fields}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def tracker_client():
    return FakeTrackerClient()


@pytest.fixture
def failing_client():
    client = FakeTrackerClient()
    client.search_error = ExternalServiceError("JIRA server error: 503", status_code=503)
    return client


@pytest.fixture(params=["sqlite", "duckdb"])
def storage(request):
    """Initialized in-memory storage on each backend."""
    adapter = StorageAdapter.connect(request.param)
    adapter.initialize_schema()
    yield adapter
    adapter.close()


@pytest.fixture
def sqlite_storage():
    adapter = StorageAdapter.connect("sqlite")
    adapter.initialize_schema()
    yield adapter
    adapter.close()


def add_person(storage, person_id: int, email: str | None = None, weekly_capacity: float = 40) -> None:
    storage.run(
        "INSERT INTO people (id, first_name, last_name, email, weekly_capacity) "
        "VALUES (:id, :first, :last, :email, :capacity)",
        {
            "id": person_id,
            "first": f"First{person_id}",
            "last": f"Last{person_id}",
            "email": email,
            "capacity": weekly_capacity,
        },
    )
