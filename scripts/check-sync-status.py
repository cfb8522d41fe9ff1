#!/usr/bin/env python3
"""Script to check sync sessions and troubleshoot record errors."""

import os
import sys
from typing import Any

from ticket_pipeline.config import StorageConfig
from ticket_pipeline.errors import StorageError, ValidationError
from ticket_pipeline.repositories import SessionRepository
from ticket_pipeline.storage import StorageAdapter, open_storage


def get_all_sessions(storage: StorageAdapter, limit: Any = 50, offset: Any = 0) -> list[dict[str, Any]]:
    """Most recent sync sessions first."""
    return SessionRepository(storage).recent(limit, offset)


def get_session_by_id(storage: StorageAdapter, session_id: str) -> dict[str, Any] | None:
    return storage.get("SELECT * FROM sync_sessions WHERE id = :id", {"id": session_id})


def get_sessions_by_state(storage: StorageAdapter, state: str) -> list[dict[str, Any]]:
    return storage.all("SELECT * FROM sync_sessions WHERE state = :state ORDER BY created_at DESC", {"state": state})


def get_record_errors(storage: StorageAdapter, session_id: str) -> list[dict[str, Any]]:
    return storage.all(
        "SELECT record_key, error, occurred_at FROM sync_record_errors "
        "WHERE session_id = :session_id ORDER BY occurred_at",
        {"session_id": session_id},
    )


def print_session_summary(sessions: list[dict[str, Any]]) -> None:
    """Print summary of sync sessions."""
    state_counts: dict[str, int] = {}
    with_errors = 0

    for session in sessions:
        state = session.get("state", "unknown")
        state_counts[state] = state_counts.get(state, 0) + 1
        if (session.get("errored") or 0) > 0:
            with_errors += 1

    print("Sync Session Summary")  # noqa: T201
    print("=" * 40)  # noqa: T201
    print(f"Total sessions: {len(sessions)}")  # noqa: T201
    print(f"Sessions with record errors: {with_errors}")  # noqa: T201
    print()  # noqa: T201

    print("State breakdown:")  # noqa: T201
    for state, count in sorted(state_counts.items()):
        print(f"  {state}: {count}")  # noqa: T201
    print()  # noqa: T201


def print_detailed_session(storage: StorageAdapter, session: dict[str, Any]) -> None:
    """Print one session with its record errors."""
    print(f"Sync Session: {session.get('id', 'unknown')}")  # noqa: T201
    print("-" * 50)  # noqa: T201
    print(f"Projects: {session.get('project_set', 'N/A')}")  # noqa: T201
    print(f"State: {session.get('state', 'unknown')}")  # noqa: T201
    print(f"Created: {session.get('created_at', 'N/A')}")  # noqa: T201
    print(f"Completed: {session.get('completed_at') or 'N/A'}")  # noqa: T201
    print(  # noqa: T201
        f"Fetched: {session.get('fetched', 0)}  Upserted: {session.get('upserted', 0)}  "
        f"Errored: {session.get('errored', 0)}"
    )

    if session.get("fatal_error"):
        print(f"Fatal Error: {session['fatal_error']}")  # noqa: T201

    for error in get_record_errors(storage, session["id"]):
        print(f"  ! {error['record_key']}: {error['error']}")  # noqa: T201

    print()  # noqa: T201


def main() -> None:
    """Run the sync status checker."""
    backend = os.getenv("STORAGE_BACKEND", "sqlite")
    path = os.getenv("STORAGE_PATH", "data/tickets.db")

    if len(sys.argv) < 2:
        print("Usage: python check-sync-status.py <command> [args]")  # noqa: T201
        print()  # noqa: T201
        print("Commands:")  # noqa: T201
        print("  summary                    - Show sync session summary")  # noqa: T201
        print("  failed                     - Show failed sessions")  # noqa: T201
        print("  running                    - Show sessions still marked running")  # noqa: T201
        print("  session <session_id>       - Show specific session details")  # noqa: T201
        print("  all [limit] [offset]       - Show recent sessions")  # noqa: T201
        print()  # noqa: T201
        print("Environment variables:")  # noqa: T201
        print(f"  STORAGE_BACKEND={backend}")  # noqa: T201
        print(f"  STORAGE_PATH={path}")  # noqa: T201
        sys.exit(1)

    command = sys.argv[1].lower()

    try:
        storage = open_storage(StorageConfig(backend=backend, path=path))
        if not storage.table_exists("sync_sessions"):
            print(f"No sync sessions recorded in {path}")  # noqa: T201
            sys.exit(1)

        if command == "summary":
            print_session_summary(get_all_sessions(storage))

        elif command in ("failed", "running"):
            sessions = get_sessions_by_state(storage, command)
            print(f"Found {len(sessions)} {command} sessions:")  # noqa: T201
            print()  # noqa: T201
            for session in sessions:
                print_detailed_session(storage, session)

        elif command == "session":
            if len(sys.argv) < 3:
                print("Error: session_id required for 'session' command")  # noqa: T201
                sys.exit(1)

            session_id = sys.argv[2]
            session = get_session_by_id(storage, session_id)
            if session:
                print_detailed_session(storage, session)
            else:
                print(f"Sync session '{session_id}' not found")  # noqa: T201

        elif command == "all":
            sessions = get_all_sessions(storage, *sys.argv[2:4])
            print_session_summary(sessions)
            for session in sessions:
                print_detailed_session(storage, session)

        else:
            print(f"Unknown command: {command}")  # noqa: T201
            sys.exit(1)

    except (StorageError, ValidationError) as e:
        print(f"Error: {e}")  # noqa: T201
        sys.exit(1)


if __name__ == "__main__":
    main()
