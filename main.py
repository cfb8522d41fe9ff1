"""Main module for the ticket ingestion pipeline."""

import sys
import threading

from ticket_pipeline.errors import PipelineError
from ticket_pipeline.handlers import (
    assignment_handler,
    cancel_sync_handler,
    capacity_handler,
    expertise_config_handler,
    get_pipeline,
    health_check_handler,
    progress_stream_handler,
    reset_pipeline,
    statistics_handler,
    sync_status_handler,
    sync_trigger_handler,
    ticket_handler,
)
from ticket_pipeline.repositories import TicketRepository

# Export handlers for the hosting runtime
__all__ = [
    "sync_trigger_handler",
    "sync_status_handler",
    "cancel_sync_handler",
    "progress_stream_handler",
    "capacity_handler",
    "expertise_config_handler",
    "statistics_handler",
    "ticket_handler",
    "assignment_handler",
    "health_check_handler",
]

USAGE = """Usage: python main.py <command> [args]

Commands:
  sync <PROJECT> [PROJECT...] [--incremental]   - Run a sync and follow its progress
  sync --all [--incremental]                    - Sync every visible project (only updated ones if incremental)
  schedule [seconds] [--full]                   - Run incremental syncs of all projects on an interval
  status <session_id>                           - Show a sync session
  capacity <person_id>                          - Show load and client expertise
  team                                          - Show team utilization
  stats                                         - Show ticket statistics
  ticket <TICKET_KEY>                           - Show one stored ticket
  assign <TICKET_KEY> <person_id> <hours>       - Assign a person to a ticket
  complete <TICKET_KEY> <person_id>             - Complete an open assignment
"""


def run_sync(projects: list[str] | None, incremental: bool) -> int:
    """Start a sync and print progress until it finishes."""
    pipeline = get_pipeline()
    orchestrator = pipeline.orchestrator

    session_id = orchestrator.start_sync(projects, {"incremental": incremental}, requester="cli")
    print(f"Started sync {session_id} for {', '.join(projects) if projects else 'all projects'}")  # noqa: T201

    with orchestrator.subscribe(session_id) as subscription:
        for event in subscription.events():
            print(  # noqa: T201
                f"[{event.sequence:>4}] {event.state.value:<9} {event.percent_complete:>3}% "
                f"project={event.current_project or '-'} fetched={event.fetched} "
                f"upserted={event.upserted} errored={event.errored}"
            )
            if event.is_terminal:
                for error in event.errors:
                    print(f"  ! {error.record_key}: {error.error}")  # noqa: T201
                if event.error:
                    print(f"Sync failed: {event.error}")  # noqa: T201
                    return 1
    return 0


def call_handler(handler, event: dict) -> int:
    """Run a handler locally and print its JSON body."""
    response = handler(event)
    print(response["body"])  # noqa: T201
    return 0 if response["statusCode"] < 300 else 1


def show_capacity(person_id: str) -> int:
    capacity = get_pipeline().capacity
    load = capacity.load_for(person_id)
    print(  # noqa: T201
        f"Person {load.person_id}: {load.current_load_hours:g}h of {load.weekly_capacity:g}h "
        f"({load.utilization_percent}%)"
    )
    for expertise in capacity.expertise_profile(person_id):
        print(  # noqa: T201
            f"  {expertise.client_name or expertise.client_id}: "
            f"{expertise.hours_worked:g}h {expertise.tier.value}"
        )
    return 0


def show_team() -> int:
    for load in get_pipeline().capacity.team_utilization():
        share = f" share={load.share_of_team_load:.1%}" if load.share_of_team_load is not None else ""
        print(f"Person {load.person_id}: {load.utilization_percent}%{share}")  # noqa: T201
    return 0


def show_statistics() -> int:
    stats = TicketRepository(get_pipeline().storage).statistics()
    print(  # noqa: T201
        f"{stats['total_tickets']} tickets across {stats['total_clients']} clients, "
        f"{stats['unique_statuses']} statuses (oldest {stats['oldest_ticket'] or '-'}, "
        f"latest update {stats['latest_update'] or '-'})"
    )
    for status, count in stats["status_distribution"].items():
        print(f"  {status:<20} {count}")  # noqa: T201
    for client in stats["top_clients"]:
        print(f"  {client['project_key']:<10} {client['name']}: {client['ticket_count']}")  # noqa: T201
    return 0


def run_schedule(interval_seconds: float, incremental: bool) -> int:
    """Run scheduled syncs of all visible projects until interrupted."""
    scheduler = get_pipeline().scheduler
    scheduler.schedule_sync(interval_seconds, incremental=incremental)
    print(f"Syncing every {interval_seconds:g}s, press Ctrl+C to stop")  # noqa: T201
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        scheduler.stop_scheduled_syncs()
    return 0


def show_status(session_id: str) -> int:
    session = get_pipeline().orchestrator.get_status(session_id)
    if session is None:
        print(f"Sync session '{session_id}' not found")  # noqa: T201
        return 1
    print(session.model_dump_json(indent=2))  # noqa: T201
    return 0


def main() -> None:
    """Entry point for local runs."""
    args = sys.argv[1:]
    if not args:
        print(USAGE)  # noqa: T201
        sys.exit(1)

    command, rest = args[0].lower(), args[1:]

    try:
        if command == "sync" and rest:
            incremental = "--incremental" in rest
            projects = [arg for arg in rest if not arg.startswith("--")]
            code = run_sync(None if "--all" in rest else projects, incremental)
        elif command == "schedule":
            values = [arg for arg in rest if not arg.startswith("--")]
            code = run_schedule(float(values[0]) if values else 300.0, "--full" not in rest)
        elif command == "stats":
            code = show_statistics()
        elif command == "ticket" and rest:
            code = call_handler(ticket_handler, {"pathParameters": {"ticket_key": rest[0]}})
        elif command == "assign" and len(rest) >= 3:
            body = {"ticket_key": rest[0], "person_id": rest[1], "hours": rest[2]}
            code = call_handler(assignment_handler, {"httpMethod": "POST", "body": body})
        elif command == "complete" and len(rest) >= 2:
            body = {"ticket_key": rest[0], "person_id": rest[1]}
            code = call_handler(assignment_handler, {"httpMethod": "DELETE", "body": body})
        elif command == "status" and rest:
            code = show_status(rest[0])
        elif command == "capacity" and rest:
            code = show_capacity(rest[0])
        elif command == "team":
            code = show_team()
        elif command == "health":
            print(health_check_handler({})["body"])  # noqa: T201
            code = 0
        else:
            print(USAGE)  # noqa: T201
            code = 1
    except PipelineError as e:
        print(f"Error: {e}")  # noqa: T201
        code = 1
    finally:
        reset_pipeline()

    sys.exit(code)


if __name__ == "__main__":
    main()
