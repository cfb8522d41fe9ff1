"""Orchestrates paginated synchronization from JIRA into local storage."""

import re
import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse

import structlog
from pydantic import ValidationError as ModelValidationError

from .config import SyncSettings
from .errors import (
    ExternalServiceError,
    PartialRecordError,
    RateLimitExceeded,
    StorageError,
    SyncCancelledError,
    SyncConflictError,
    ValidationError,
)
from .field_discovery import FieldDiscoveryService
from .jira_client import JiraClient, build_jql
from .models import ProgressEvent, RecordError, SyncOptions, SyncSession, SyncState, Ticket
from .normalization import normalize_issue
from .progress import ProgressChannel, Subscription
from .rate_limiter import RateLimiter
from .repositories import SessionRepository, TicketRepository
from .storage import StorageAdapter
from .validation import validate_record_for_storage, validate_sync_options

logger = structlog.get_logger()

PROJECT_KEY_PATTERN = re.compile(r"[A-Z][A-Z0-9_]{1,9}")
ALL_PROJECTS = "*"


@dataclass
class _SessionRuntime:
    """In-memory state of a session that has not been cleaned up yet."""

    session: SyncSession
    channel: ProgressChannel
    project_set: frozenset[str]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Future | None = None


class SyncOrchestrator:
    """Drives sync sessions: discovery, paging, normalization, validation and upsert."""

    def __init__(
        self,
        client: JiraClient,
        storage: StorageAdapter,
        sync_limiter: RateLimiter,
        tracker_limiter: RateLimiter,
        settings: SyncSettings | None = None,
        discovery_factory: Callable[[JiraClient], FieldDiscoveryService] = FieldDiscoveryService,
    ) -> None:
        """Initialize sync orchestrator."""
        self.client = client
        self.storage = storage
        self.sync_limiter = sync_limiter
        self.tracker_limiter = tracker_limiter
        self.settings = settings or SyncSettings()
        self.discovery_factory = discovery_factory
        self.tickets = TicketRepository(storage)
        self.sessions = SessionRepository(storage)
        self.tracker_key = f"tracker:{urlparse(client.base_url).netloc or client.base_url}"

        self._lock = threading.Lock()
        self._runtimes: dict[str, _SessionRuntime] = {}
        self._active: dict[frozenset[str], str] = {}
        self._executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="sync")

    def start_sync(
        self,
        projects: Iterable[str] | None,
        options: dict[str, Any] | None = None,
        requester: str = "anonymous",
    ) -> str:
        """Validate and register a session, then run it in the background.

        ``projects=None`` syncs every project visible to the tracker account, narrowed
        to the ones with recent updates when the sync is incremental.

        Raises ValidationError, RateLimitExceeded or SyncConflictError synchronously.
        """
        project_list = _validate_projects(projects) if projects is not None else []
        sync_options = validate_sync_options(options)
        project_set = frozenset(project_list) if project_list else frozenset({ALL_PROJECTS})

        self.cleanup_sessions()

        with self._lock:
            running_id = self._active.get(project_set)
            if running_id is not None:
                logger.warning("Sync already running", projects=sorted(project_set), session_id=running_id)
                raise SyncConflictError(project_set, running_id)

            self.sync_limiter.check(requester)

            session = SyncSession(
                id=f"sync_{uuid.uuid4().hex[:12]}",
                projects=project_list,
                options=sync_options,
                created_at=datetime.now(UTC),
            )
            runtime = _SessionRuntime(
                session=session,
                channel=ProgressChannel(session.id, buffer_size=self.settings.subscriber_buffer),
                project_set=project_set,
            )
            self._runtimes[session.id] = runtime
            self._active[project_set] = session.id

        try:
            self.sessions.save(session)
        except StorageError:
            self._release(runtime)
            raise

        self._publish(runtime)
        logger.info(
            "Sync session created",
            session_id=session.id,
            projects=project_list or ALL_PROJECTS,
            requester=requester,
        )

        runtime.future = self._executor.submit(self._run, runtime)
        return session.id

    def get_status(self, session_id: str) -> SyncSession | None:
        """Current snapshot of a session, from memory or the audit trail."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            return runtime.session.model_copy(deep=True)
        return self.sessions.get(session_id)

    def subscribe(self, session_id: str) -> Subscription:
        """Attach a progress observer to a session."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            return runtime.channel.subscribe()

        session = self.sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)

        # Session already left memory; replay its final state
        channel = ProgressChannel(session_id, buffer_size=1)
        channel.publish(**_event_fields(session, terminal=True))
        return channel.subscribe()

    def cancel(self, session_id: str) -> bool:
        """Request cancellation; returns False when the session is not active."""
        runtime = self._runtimes.get(session_id)
        if runtime is None or runtime.session.state.is_terminal:
            return False
        runtime.cancel_event.set()
        logger.info("Sync cancellation requested", session_id=session_id)
        return True

    def wait(self, session_id: str, timeout: float | None = None) -> SyncSession | None:
        """Block until a session reaches a terminal state."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None and runtime.future is not None:
            runtime.future.result(timeout=timeout)
        return self.get_status(session_id)

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._active.values())

    def cleanup_sessions(self) -> int:
        """Forget terminal sessions nobody is watching anymore.

        Also purges finished sessions older than the retention window from the audit
        trail. Returns the number of sessions dropped from memory.
        """
        with self._lock:
            stale = [
                session_id
                for session_id, runtime in self._runtimes.items()
                if runtime.session.state.is_terminal and runtime.channel.subscriber_count == 0
            ]
            for session_id in stale:
                del self._runtimes[session_id]

        cutoff = datetime.now(UTC) - timedelta(days=self.settings.session_retention_days)
        purged = self.sessions.cleanup(cutoff)
        if purged:
            logger.info("Purged expired sync sessions", purged=purged, cutoff=cutoff.isoformat())
        return len(stale)

    def shutdown(self, wait: bool = True) -> None:
        for session_id in self.active_sessions():
            self.cancel(session_id)
        self._executor.shutdown(wait=wait)

    def _run(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        log = logger.bind(session_id=session.id)

        try:
            self._check_cancelled(runtime)
            session.state = SyncState.RUNNING
            session.started_at = datetime.now(UTC)
            self.sessions.save(session)
            self._publish(runtime)
            log.info("Starting sync", projects=session.projects)

            options = self._effective_options(session)
            if not session.projects:
                session.projects = self._resolve_projects(runtime, options)
                self.sessions.save(session)
                self._publish(runtime)

            discovery = self.discovery_factory(self.client)
            discovery.discover()
            fields = discovery.fields_list()

            for index, project in enumerate(session.projects):
                self._check_cancelled(runtime)
                session.current_project = project
                client_id = self.tickets.ensure_client(project)
                self._sync_project(runtime, discovery, fields, options, project, index, client_id)
                self.tickets.mark_client_synced(project, datetime.now(UTC))

            session.state = SyncState.COMPLETED
            session.percent_complete = 100
            log.info(
                "Sync completed",
                fetched=session.fetched,
                upserted=session.upserted,
                errored=session.errored,
            )

        except SyncCancelledError as e:
            self._fail(session, e)
            log.warning("Sync cancelled", fetched=session.fetched, upserted=session.upserted)
        except (ExternalServiceError, StorageError) as e:
            self._fail(session, e)
            log.error("Sync failed", error=str(e), error_type=type(e).__name__)
        except Exception as e:
            self._fail(session, e)
            log.exception("Unexpected error during sync")
        finally:
            session.completed_at = datetime.now(UTC)
            try:
                self.sessions.save(session)
            except StorageError as e:
                log.error("Failed to persist final session state", error=str(e))
            self._publish(runtime)
            self._release(runtime)

    def _sync_project(
        self,
        runtime: _SessionRuntime,
        discovery: FieldDiscoveryService,
        fields: list[str],
        options: SyncOptions,
        project: str,
        index: int,
        client_id: int,
    ) -> None:
        session = runtime.session
        jql = build_jql(project, options, self.settings.default_excluded_types)
        project_count = len(session.projects)
        start_at = 0

        logger.info("Syncing project", session_id=session.id, project=project, jql=jql)

        while True:
            self._check_cancelled(runtime)
            self._admit_page(runtime)

            page = self.client.search_page(jql, start_at=start_at, max_results=self.settings.page_size, fields=fields)
            issues = page["issues"]
            total = page["total"]

            for issue in issues:
                self._check_cancelled(runtime)
                session.fetched += 1
                self._ingest(session, discovery, issue, client_id)

            start_at += len(issues)
            project_fraction = min(start_at / total, 1.0) if total else 1.0
            session.percent_complete = max(
                session.percent_complete,
                int((index + project_fraction) / project_count * 100),
            )
            self._publish(runtime)

            if not issues or start_at >= total:
                break

    def _ingest(
        self, session: SyncSession, discovery: FieldDiscoveryService, issue: dict[str, Any], client_id: int
    ) -> None:
        raw_key = issue.get("key") if isinstance(issue, dict) else None
        record_key = str(raw_key) if raw_key is not None else None
        try:
            ticket = normalize_issue(issue, discovery)
            ticket, owner_id = validate_record_for_storage(ticket, client_id)
        except (ValidationError, ModelValidationError) as e:
            self._record_failure(session, PartialRecordError(record_key, str(e)))
            return
        except StorageError:
            raise
        except Exception as e:
            # Malformed payload shapes must not abort the rest of the page
            self._record_failure(session, PartialRecordError(record_key, f"Malformed record: {type(e).__name__}: {e}"))
            return

        with self.storage.transaction():
            self.tickets.upsert_ticket(ticket, owner_id, session.id)
            self._capture_assignment(ticket)
        session.upserted += 1

    def _capture_assignment(self, ticket: Ticket) -> None:
        now = datetime.now(UTC)
        person_id = self.tickets.find_person_by_email(ticket.assignee_email)
        if person_id is not None:
            self.tickets.upsert_assignment(ticket.key, person_id, ticket.original_estimate_hours, now)

        if ticket.resolved is not None:
            self.tickets.complete_assignments_for(ticket.key, ticket.resolved)
        else:
            # Only the current assignee keeps carrying the ticket
            self.tickets.release_assignments(ticket.key, person_id, now)

    def _record_failure(self, session: SyncSession, error: PartialRecordError) -> None:
        session.errored += 1
        record_error = RecordError(record_key=error.record_key, error=error.message, occurred_at=datetime.now(UTC))
        session.errors.append(record_error)
        logger.warning("Record skipped", session_id=session.id, **error.to_dict())
        self.sessions.record_error(session.id, record_error)

    def _admit_page(self, runtime: _SessionRuntime) -> None:
        """Wait for the outbound limiter, giving up after the retry budget."""
        for attempt in range(self.settings.max_retries):
            try:
                self.tracker_limiter.check(self.tracker_key)
                return
            except RateLimitExceeded as e:
                if attempt == self.settings.max_retries - 1:
                    raise ExternalServiceError(
                        f"Tracker request budget exhausted after {self.settings.max_retries} attempts",
                        status_code=429,
                        retry_after=e.retry_after,
                    ) from e
                logger.info(
                    "Waiting for tracker request budget",
                    session_id=runtime.session.id,
                    retry_after=e.retry_after,
                    attempt=attempt + 1,
                )
                runtime.cancel_event.wait(e.retry_after)
                self._check_cancelled(runtime)

    def _effective_options(self, session: SyncSession) -> SyncOptions:
        options = session.options
        if not options.incremental or options.updated_since is not None:
            return options

        if session.projects:
            since = self.sessions.last_completed(session.projects)
        else:
            since = self.sessions.last_completed() or datetime.now(UTC) - timedelta(
                hours=self.settings.updates_lookback_hours
            )
        if since is not None:
            logger.info("Incremental sync since", session_id=session.id, since=since.isoformat())
            options = options.model_copy(update={"updated_since": since})
        return options

    def _resolve_projects(self, runtime: _SessionRuntime, options: SyncOptions) -> list[str]:
        """Visible projects, narrowed to those with matching updates when incremental."""
        session = runtime.session
        self._admit_page(runtime)
        keys: list[str] = []
        for project in self.client.get_projects():
            key = str(project["key"]).strip().upper()
            if not PROJECT_KEY_PATTERN.fullmatch(key):
                logger.warning("Skipping project with unsupported key", session_id=session.id, project=key)
            elif key not in keys:
                keys.append(key)

        if not options.incremental:
            logger.info("Resolved visible projects", session_id=session.id, projects=keys)
            return keys

        updated: list[str] = []
        for key in keys:
            self._check_cancelled(runtime)
            self._admit_page(runtime)
            jql = build_jql(key, options, self.settings.default_excluded_types)
            try:
                page = self.client.search_page(jql, start_at=0, max_results=1, fields=["key"])
            except ExternalServiceError as e:
                logger.warning("Could not check project for updates", session_id=session.id, project=key, error=str(e))
                continue
            if page["total"] > 0:
                updated.append(key)

        logger.info("Resolved projects with updates", session_id=session.id, checked=len(keys), projects=updated)
        return updated

    def _check_cancelled(self, runtime: _SessionRuntime) -> None:
        if runtime.cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled by request")

    def _fail(self, session: SyncSession, error: BaseException) -> None:
        session.state = SyncState.FAILED
        if session.fatal_error is None:
            session.fatal_error = f"{type(error).__name__}: {error}"

    def _publish(self, runtime: _SessionRuntime) -> ProgressEvent:
        session = runtime.session
        return runtime.channel.publish(**_event_fields(session, terminal=session.state.is_terminal))

    def _release(self, runtime: _SessionRuntime) -> None:
        with self._lock:
            if self._active.get(runtime.project_set) == runtime.session.id:
                del self._active[runtime.project_set]


def _event_fields(session: SyncSession, terminal: bool) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "state": session.state,
        "fetched": session.fetched,
        "upserted": session.upserted,
        "errored": session.errored,
        "current_project": session.current_project,
        "percent_complete": session.percent_complete,
    }
    if terminal:
        fields["error"] = session.fatal_error
        fields["errors"] = list(session.errors)
    return fields


def _validate_projects(projects: Iterable[str]) -> list[str]:
    if isinstance(projects, str):
        projects = [projects]
    project_list: list[str] = []
    errors: list[str] = []
    for project in projects or []:
        key = str(project).strip().upper()
        if not PROJECT_KEY_PATTERN.fullmatch(key):
            errors.append(f"projects: Invalid project key: {project}")
        elif key not in project_list:
            project_list.append(key)

    if errors:
        raise ValidationError(f"Invalid project set: {', '.join(errors)}", errors=errors)
    if not project_list:
        raise ValidationError("At least one project is required", field="projects")
    return project_list
