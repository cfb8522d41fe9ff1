"""Request handlers exposing sync, progress and capacity operations."""

import json
import math
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import structlog

from .capacity import CapacityEngine
from .config import AppConfig, load_config
from .errors import (
    ExternalServiceError,
    RateLimitExceeded,
    StorageError,
    SyncConflictError,
    UnsupportedOperation,
    ValidationError,
    describe_error,
)
from .jira_client import JiraClient
from .logging_config import configure_logging
from .progress import Subscription
from .rate_limiter import RateLimiter, RateLimitSweeper
from .repositories import TicketRepository
from .scheduler import SyncScheduler
from .storage import StorageAdapter, open_storage
from .sync_orchestrator import SyncOrchestrator
from .validation import validate_positive_int, validate_record_key

logger = structlog.get_logger()

KEEPALIVE_SECONDS = 15.0

_STATUS_CODES: list[tuple[type[BaseException], int]] = [
    (ValidationError, 400),
    (UnsupportedOperation, 400),
    (SyncConflictError, 409),
    (RateLimitExceeded, 429),
    (ExternalServiceError, 502),
    (StorageError, 500),
]


@dataclass
class Pipeline:
    """Process-wide wiring of every pipeline component."""

    config: AppConfig
    storage: StorageAdapter
    client: JiraClient
    api_limiter: RateLimiter
    sync_limiter: RateLimiter
    tracker_limiter: RateLimiter
    sweeper: RateLimitSweeper
    orchestrator: SyncOrchestrator
    capacity: CapacityEngine
    scheduler: SyncScheduler | None = None

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop_scheduled_syncs()
        self.orchestrator.shutdown()
        self.sweeper.stop()
        self.storage.close()


def build_pipeline(config: AppConfig) -> Pipeline:
    """Open storage and construct every component from configuration."""
    storage = open_storage(config.storage)
    storage.initialize_schema()

    client = JiraClient(
        config.tracker,
        max_retries=config.sync.max_retries,
        retry_delay=config.sync.retry_delay_seconds,
    )
    api_limiter = RateLimiter.from_config(config.api_rate_limit, "api")
    sync_limiter = RateLimiter.from_config(config.sync_rate_limit, "sync")
    tracker_limiter = RateLimiter.from_config(config.tracker_rate_limit, "tracker")
    sweeper = RateLimitSweeper([api_limiter, sync_limiter, tracker_limiter], config.sweep_interval_seconds)

    orchestrator = SyncOrchestrator(client, storage, sync_limiter, tracker_limiter, config.sync)
    interrupted = orchestrator.sessions.mark_interrupted()
    if interrupted:
        logger.warning("Marked interrupted sync sessions as failed", count=interrupted)

    capacity = CapacityEngine(storage, config.expertise)
    capacity.load_persisted_config()

    scheduler = SyncScheduler(orchestrator)
    if config.schedule.enabled:
        scheduler.schedule_sync(
            config.schedule.interval_seconds,
            incremental=config.schedule.incremental,
            projects=config.schedule.projects or None,
        )

    sweeper.start()
    logger.info(
        "Pipeline initialized",
        backend=storage.kind,
        analytics=storage.supports_analytics,
        auto_sync=config.schedule.enabled,
    )

    return Pipeline(
        config=config,
        storage=storage,
        client=client,
        api_limiter=api_limiter,
        sync_limiter=sync_limiter,
        tracker_limiter=tracker_limiter,
        sweeper=sweeper,
        orchestrator=orchestrator,
        capacity=capacity,
        scheduler=scheduler,
    )


# Global pipeline instance (reused across invocations)
_pipeline: Pipeline | None = None


def get_pipeline() -> Pipeline:
    """Get or create the global pipeline instance."""
    global _pipeline
    if _pipeline is None:
        config = load_config()
        configure_logging(config.log_level, config.log_json)
        _pipeline = build_pipeline(config)
    return _pipeline


def reset_pipeline() -> None:
    global _pipeline
    if _pipeline is not None:
        _pipeline.close()
        _pipeline = None


def caller_key(event: dict[str, Any]) -> str:
    """Identify the caller for API rate limiting."""
    headers = _headers(event)
    api_key = headers.get("x-api-key")
    if api_key:
        return f"key:{api_key}"
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    source_ip = event.get("requestContext", {}).get("identity", {}).get("sourceIp")
    return f"ip:{source_ip}" if source_ip else "anonymous"


def sync_trigger_handler(
    event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None
) -> dict[str, Any]:
    """Start a sync session; progress is observed through the status and stream handlers.

    ``{"all_projects": true}`` without a project list syncs every visible project.
    """
    try:
        pipeline = pipeline or get_pipeline()
        caller = caller_key(event)
        pipeline.api_limiter.check(caller)

        body = _json_body(event)
        projects = body.get("projects") or body.get("project_keys")
        if projects is None and not body.get("all_projects"):
            raise ValidationError("projects is required unless all_projects is set", field="projects")

        session_id = pipeline.orchestrator.start_sync(projects, body.get("options"), requester=caller)

        logger.info("Sync triggered", session_id=session_id, caller=caller)
        return _response(202, {"session_id": session_id, "status": "pending"})

    except Exception as e:
        return _error_response(e, pipeline)


def sync_status_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        session_id = _path_param(event, "session_id")
        session = pipeline.orchestrator.get_status(session_id)
        if session is None:
            return _response(404, {"error": f"Sync session {session_id} not found"})

        return _response(200, session.model_dump(mode="json"))

    except Exception as e:
        return _error_response(e, pipeline)


def cancel_sync_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        session_id = _path_param(event, "session_id")
        if pipeline.orchestrator.cancel(session_id):
            return _response(202, {"session_id": session_id, "message": "Cancellation requested"})

        if pipeline.orchestrator.get_status(session_id) is None:
            return _response(404, {"error": f"Sync session {session_id} not found"})
        return _response(409, {"error": "Sync session is not running", "session_id": session_id})

    except Exception as e:
        return _error_response(e, pipeline)


def progress_stream_handler(
    event: dict[str, Any],
    context: Any = None,
    pipeline: Pipeline | None = None,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> dict[str, Any]:
    """Server-sent events for one session.

    The body is an iterator of frames for a streaming transport. It ends after
    the terminal event; closing it early detaches the observer.
    """
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        session_id = _path_param(event, "session_id")
        try:
            subscription = pipeline.orchestrator.subscribe(session_id)
        except KeyError:
            return _response(404, {"error": f"Sync session {session_id} not found"})

        return {
            "statusCode": 200,
            "headers": {
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
            "body": _sse_frames(subscription, keepalive_seconds),
        }

    except Exception as e:
        return _error_response(e, pipeline)


def capacity_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    """Load and expertise for one person, or utilization for the whole team."""
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        params = event.get("queryStringParameters") or {}
        capacity = pipeline.capacity

        if params.get("view") == "team":
            loads = capacity.team_utilization()
            return _response(
                200,
                {
                    "analytics": pipeline.storage.supports_analytics,
                    "people": [load.model_dump(mode="json", exclude_none=True) for load in loads],
                },
            )

        person_id = validate_positive_int(
            (event.get("pathParameters") or {}).get("person_id") or params.get("person_id"),
            "person_id",
        )
        result: dict[str, Any] = capacity.load_for(person_id).model_dump(mode="json", exclude_none=True)

        if params.get("client_id"):
            result["expertise"] = [capacity.expertise_for(person_id, params["client_id"]).model_dump(mode="json")]
        else:
            result["expertise"] = [e.model_dump(mode="json") for e in capacity.expertise_profile(person_id)]

        return _response(200, result)

    except Exception as e:
        return _error_response(e, pipeline)


def expertise_config_handler(
    event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None
) -> dict[str, Any]:
    """Read (GET) or replace (PUT) the expertise configuration."""
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        method = (event.get("httpMethod") or "GET").upper()
        if method == "GET":
            return _response(200, pipeline.capacity.config.model_dump())
        if method not in ("PUT", "POST"):
            return _response(405, {"error": f"Method {method} not allowed"})

        updated = pipeline.capacity.update_config(**_json_body(event))
        return _response(200, updated.model_dump())

    except Exception as e:
        return _error_response(e, pipeline)


def statistics_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    """Ticket totals, status distribution and the busiest clients."""
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        params = event.get("queryStringParameters") or {}
        top = validate_positive_int(params.get("top", 10), "top")
        return _response(200, TicketRepository(pipeline.storage).statistics(top_clients=min(top, 100)))

    except Exception as e:
        return _error_response(e, pipeline)


def ticket_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    """One stored ticket by key."""
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        ticket_key = validate_record_key(_path_param(event, "ticket_key"))
        ticket = TicketRepository(pipeline.storage).get_ticket(ticket_key)
        if ticket is None:
            return _response(404, {"error": f"Ticket {ticket_key} not found"})

        return _response(200, ticket)

    except Exception as e:
        return _error_response(e, pipeline)


def assignment_handler(event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None) -> dict[str, Any]:
    """Assign a person to a ticket (POST) or complete their assignment (DELETE)."""
    try:
        pipeline = pipeline or get_pipeline()
        pipeline.api_limiter.check(caller_key(event))

        body = _json_body(event)
        ticket_key = validate_record_key(body.get("ticket_key"))
        person_id = validate_positive_int(body.get("person_id"), "person_id")

        method = (event.get("httpMethod") or "POST").upper()
        if method == "POST":
            try:
                hours = float(body.get("hours", 0))
            except (TypeError, ValueError) as e:
                raise ValidationError("hours must be a number", field="hours") from e
            if not math.isfinite(hours):
                raise ValidationError("hours must be a finite number", field="hours")
            assignment = pipeline.capacity.assign(ticket_key, person_id, hours)
            return _response(201, assignment.model_dump(mode="json"))

        if method == "DELETE":
            if not pipeline.capacity.complete(ticket_key, person_id):
                return _response(404, {"error": f"No open assignment of {ticket_key} to person {person_id}"})
            return _response(200, {"ticket_key": ticket_key, "person_id": person_id, "completed": True})

        raise UnsupportedOperation(f"Method {method} is not supported")

    except Exception as e:
        return _error_response(e, pipeline)


def health_check_handler(
    event: dict[str, Any], context: Any = None, pipeline: Pipeline | None = None
) -> dict[str, Any]:
    try:
        pipeline = pipeline or get_pipeline()

        health_status: dict[str, Any] = {
            "status": "healthy",
            "storage": {
                "backend": pipeline.storage.kind,
                "analytics": pipeline.storage.supports_analytics,
                "schema_ready": pipeline.storage.table_exists("tickets"),
            },
            "active_sessions": pipeline.orchestrator.active_sessions(),
            "scheduled_syncs": pipeline.scheduler.scheduled() if pipeline.scheduler else [],
            "tracker": {
                "base_url": pipeline.client.base_url,
                "request_budget": pipeline.tracker_limiter.remaining(pipeline.orchestrator.tracker_key),
            },
            "rate_limits": {
                limiter.name: {"tracked_keys": limiter.tracked_keys(), "max_requests": limiter.max_requests}
                for limiter in (pipeline.api_limiter, pipeline.sync_limiter, pipeline.tracker_limiter)
            },
        }

        if (event.get("queryStringParameters") or {}).get("deep") == "true":
            try:
                user = pipeline.client.test_connection()
                health_status["tracker"]["user"] = user.get("displayName")
            except ExternalServiceError as e:
                health_status["status"] = "degraded"
                health_status["tracker"]["error"] = str(e)

        logger.info("Health check", status=health_status["status"])
        return _response(200, health_status)

    except Exception as e:
        logger.error("Health check failed", error=str(e), error_type=type(e).__name__)
        debug = pipeline.config.debug if pipeline else False
        return _response(500, {"status": "unhealthy", "error": describe_error(e, debug)})


def format_sse(event_name: str, data: dict[str, Any], event_id: int | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_name}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"


def _sse_frames(subscription: Subscription, keepalive_seconds: float) -> Iterator[str]:
    with subscription:
        while True:
            event = subscription.get(timeout=keepalive_seconds)
            if event is None:
                yield ": keepalive\n\n"
                continue
            name = event.state.value if event.is_terminal else "progress"
            yield format_sse(name, event.model_dump(mode="json"), event_id=event.sequence)
            if event.is_terminal:
                return


def _response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"statusCode": status_code, "body": json.dumps(body, default=str)}
    if headers:
        response["headers"] = headers
    return response


def _error_response(exc: Exception, pipeline: Pipeline | None) -> dict[str, Any]:
    debug = pipeline.config.debug if pipeline else False
    status_code = next((code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)), 500)

    if status_code == 500:
        logger.exception("Unhandled error in handler", error=str(exc))
    else:
        logger.info("Request rejected", status_code=status_code, error=str(exc))

    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}

    return _response(status_code, {"error": describe_error(exc, debug)}, headers)


def _headers(event: dict[str, Any]) -> dict[str, str]:
    return {k.lower(): v for k, v in (event.get("headers") or {}).items()}


def _json_body(event: dict[str, Any]) -> dict[str, Any]:
    body = event.get("body") or "{}"
    if isinstance(body, dict):
        return body

    if event.get("isBase64Encoded", False):
        import base64

        body = base64.b64decode(body).decode("utf-8")

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValidationError("Invalid JSON body", field="body") from e
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object", field="body")
    return data


def _path_param(event: dict[str, Any], name: str) -> str:
    value = (event.get("pathParameters") or {}).get(name) or event.get(name)
    if not value:
        raise ValidationError(f"{name} is required", field=name)
    return str(value)
