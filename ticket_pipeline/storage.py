"""Storage adapter over interchangeable row-oriented and analytical engines.

Both engines are reached through SQLAlchemy Core. Callers write portable SQL
with named ``:param`` binds, and the dialect of each engine renders them in its
own parameter style. Each backend owns its schema DDL and declares whether
analytical functions (window functions, percent-of-total) are available.
"""

import json
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import duckdb
import structlog
from sqlalchemy import Connection, Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .config import StorageConfig
from .errors import StorageError, UnsupportedOperation
from .validation import safe_sql_identifier

logger = structlog.get_logger()

Row = dict[str, Any]
Params = Mapping[str, Any]

SCHEMA_TABLES = """
CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY,
    name VARCHAR NOT NULL,
    project_key VARCHAR NOT NULL UNIQUE,
    last_synced VARCHAR,
    created_at VARCHAR
);

CREATE TABLE IF NOT EXISTS tickets (
    ticket_key VARCHAR PRIMARY KEY,
    client_id INTEGER NOT NULL,
    project_key VARCHAR NOT NULL,
    summary VARCHAR NOT NULL,
    description VARCHAR,
    status VARCHAR,
    priority VARCHAR,
    issue_type VARCHAR,
    assignee VARCHAR,
    assignee_email VARCHAR,
    reporter VARCHAR,
    customer_priority VARCHAR,
    internal_priority VARCHAR,
    sla VARCHAR,
    severity VARCHAR,
    original_estimate_hours DOUBLE,
    labels VARCHAR DEFAULT '[]',
    components VARCHAR DEFAULT '[]',
    custom_fields VARCHAR DEFAULT '{}',
    jira_created VARCHAR,
    jira_updated VARCHAR,
    resolved_at VARCHAR,
    last_synced VARCHAR,
    session_id VARCHAR
);

CREATE TABLE IF NOT EXISTS people (
    id INTEGER PRIMARY KEY,
    first_name VARCHAR NOT NULL,
    last_name VARCHAR NOT NULL,
    email VARCHAR,
    weekly_capacity DOUBLE NOT NULL DEFAULT 40,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS people_specializations (
    person_id INTEGER NOT NULL,
    tag VARCHAR NOT NULL,
    PRIMARY KEY (person_id, tag)
);

CREATE TABLE IF NOT EXISTS ticket_assignments (
    ticket_key VARCHAR NOT NULL,
    person_id INTEGER NOT NULL,
    assigned_hours DOUBLE NOT NULL DEFAULT 0,
    assigned_at VARCHAR NOT NULL,
    completed_at VARCHAR,
    PRIMARY KEY (ticket_key, person_id)
);

CREATE TABLE IF NOT EXISTS sync_sessions (
    id VARCHAR PRIMARY KEY,
    project_set VARCHAR NOT NULL,
    state VARCHAR NOT NULL,
    options VARCHAR DEFAULT '{}',
    fetched INTEGER DEFAULT 0,
    upserted INTEGER DEFAULT 0,
    errored INTEGER DEFAULT 0,
    current_project VARCHAR,
    percent_complete INTEGER DEFAULT 0,
    fatal_error VARCHAR,
    created_at VARCHAR NOT NULL,
    started_at VARCHAR,
    completed_at VARCHAR
);

CREATE TABLE IF NOT EXISTS sync_record_errors (
    session_id VARCHAR NOT NULL,
    record_key VARCHAR,
    error VARCHAR NOT NULL,
    occurred_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS people_config (
    id INTEGER PRIMARY KEY,
    expertise_config VARCHAR NOT NULL,
    last_updated VARCHAR
);
"""

SQLITE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_tickets_client ON tickets(client_id);
CREATE INDEX IF NOT EXISTS idx_tickets_assignee_email ON tickets(assignee_email);
CREATE INDEX IF NOT EXISTS idx_assignments_person ON ticket_assignments(person_id);
CREATE INDEX IF NOT EXISTS idx_sync_sessions_project_set ON sync_sessions(project_set, state);
CREATE INDEX IF NOT EXISTS idx_sync_record_errors_session ON sync_record_errors(session_id);
"""


@dataclass(frozen=True)
class RunResult:
    """Outcome of a write statement."""

    change_count: int


@dataclass(frozen=True)
class Backend:
    """What differs between the supported engines."""

    kind: str
    supports_analytics: bool
    schema: str
    tables_query: str
    error_types: tuple[type[BaseException], ...]

    def url(self, path: str) -> str:
        if path == ":memory:":
            return "sqlite://" if self.kind == "sqlite" else "duckdb:///:memory:"
        return f"{self.kind}:///{path}"

    def create_engine(self, path: str) -> Engine:
        _ensure_parent(path)
        if self.kind == "sqlite":
            return create_engine(
                self.url(path),
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(self.url(path), poolclass=StaticPool)


SQLITE = Backend(
    kind="sqlite",
    supports_analytics=False,
    schema=SCHEMA_TABLES + SQLITE_INDEXES,
    tables_query="SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name",
    error_types=(SQLAlchemyError,),
)

DUCKDB = Backend(
    kind="duckdb",
    supports_analytics=True,
    schema=SCHEMA_TABLES,
    tables_query="SELECT table_name FROM information_schema.tables WHERE table_name = :name",
    error_types=(SQLAlchemyError, duckdb.Error),
)

BACKENDS = {backend.kind: backend for backend in (SQLITE, DUCKDB)}


class StorageAdapter:
    """Capability-negotiating facade used by every other component."""

    def __init__(self, engine: Engine, backend: Backend) -> None:
        """Initialize storage adapter."""
        self.engine = engine
        self.backend = backend
        self._lock = threading.RLock()
        # Open while a transaction() block is active
        self._conn: Connection | None = None

    @classmethod
    def connect(cls, kind: str, path: str = ":memory:") -> "StorageAdapter":
        """Build an adapter for a backend kind and open its connection."""
        backend = BACKENDS[kind]
        adapter = cls(backend.create_engine(path), backend)
        with adapter._guard("connect"):
            adapter.engine.connect().close()
        return adapter

    @property
    def kind(self) -> str:
        return self.backend.kind

    @property
    def supports_analytics(self) -> bool:
        return self.backend.supports_analytics

    def get(self, query: str, params: Params | None = None) -> Row | None:
        rows = self.all(query, params)
        return rows[0] if rows else None

    def all(self, query: str, params: Params | None = None) -> list[Row]:
        with self._guard(query), self._connection() as conn:
            result = conn.execute(text(query), _coerce(params))
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings()]

    def run(self, query: str, params: Params | None = None) -> RunResult:
        with self._guard(query), self._connection() as conn:
            result = conn.execute(text(query), _coerce(params))
            return RunResult(change_count=_change_count(result))

    def exec(self, ddl: str) -> None:
        """Execute parameterless statements separated by semicolons."""
        statements = [statement.strip() for statement in ddl.split(";") if statement.strip()]
        with self._guard(ddl), self._connection() as conn:
            for statement in statements:
                conn.exec_driver_sql(statement)

    def run_analytics(self, query: str, params: Params | None = None) -> list[Row]:
        """Run a query that needs analytical functions."""
        if not self.supports_analytics:
            raise UnsupportedOperation(f"Analytics queries are not available on the {self.kind} backend")
        return self.all(query, params)

    def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_columns: Sequence[str],
        update_columns: Sequence[str] | None = None,
    ) -> RunResult:
        """Insert a row, or update it when the conflict key already exists."""
        table = safe_sql_identifier(table)
        columns = [safe_sql_identifier(c) for c in row]
        conflict = [safe_sql_identifier(c) for c in conflict_columns]
        if update_columns is None:
            update_columns = [c for c in columns if c not in conflict]
        updates = [safe_sql_identifier(c) for c in update_columns]

        placeholders = ", ".join(f":{c}" for c in columns)
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        query += f" ON CONFLICT ({', '.join(conflict)})"
        if updates:
            query += " DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
        else:
            query += " DO NOTHING"

        return self.run(query, dict(zip(columns, row.values(), strict=True)))

    @contextmanager
    def transaction(self) -> Iterator["StorageAdapter"]:
        """Group statements atomically; nested calls join the outer transaction."""
        with self._lock:
            if self._conn is not None:
                yield self
                return

            with self._guard("BEGIN"):
                conn = self.engine.connect()
                trans = conn.begin()
            self._conn = conn
            try:
                yield self
            except BaseException:
                self._conn = None
                self._safe_rollback(trans)
                conn.close()
                raise
            else:
                self._conn = None
                try:
                    with self._guard("COMMIT"):
                        trans.commit()
                finally:
                    conn.close()

    def initialize_schema(self) -> None:
        logger.info("Initializing storage schema", backend=self.kind)
        self.exec(self.backend.schema)

    def table_exists(self, name: str) -> bool:
        name = safe_sql_identifier(name)
        return bool(self.all(self.backend.tables_query, {"name": name}))

    def close(self) -> None:
        with self._lock:
            self.engine.dispose()

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
        else:
            with self.engine.begin() as conn:
                yield conn

    @contextmanager
    def _guard(self, query: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except self.backend.error_types as e:
                logger.error("Storage operation failed", backend=self.kind, error=str(e), query=query[:200])
                raise StorageError(f"{self.kind} operation failed: {e}") from e

    def _safe_rollback(self, trans: Any) -> None:
        try:
            trans.rollback()
        except self.backend.error_types as e:
            logger.error("Rollback failed", backend=self.kind, error=str(e))


def open_storage(config: StorageConfig) -> StorageAdapter:
    """Open the configured backend, falling back to SQLite when DuckDB cannot be opened."""
    if config.backend == "duckdb":
        try:
            return StorageAdapter.connect("duckdb", config.path)
        except StorageError as e:
            fallback = _sqlite_fallback_path(config.path)
            logger.warning("Failed to open DuckDB, falling back to SQLite", error=str(e), path=fallback)
            return StorageAdapter.connect("sqlite", fallback)

    try:
        return StorageAdapter.connect("sqlite", config.path)
    except StorageError as e:
        raise StorageError(f"Failed to open SQLite database {config.path}: {e}") from e


def _change_count(result: Any) -> int:
    # DuckDB reports DML outcomes as a single "Count" row
    if result.returns_rows:
        row = result.fetchone()
        if row is not None and len(row) == 1 and isinstance(row[0], int):
            return int(row[0])
        return 0
    return max(result.rowcount, 0)


def _coerce(params: Params | None) -> dict[str, Any]:
    coerced = {}
    for name, value in (params or {}).items():
        if isinstance(value, datetime):
            coerced[name] = value.isoformat()
        elif isinstance(value, bool):
            coerced[name] = int(value)
        elif isinstance(value, (list, dict)):
            coerced[name] = json.dumps(value, default=str)
        else:
            coerced[name] = value
    return coerced


def _ensure_parent(path: str) -> None:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def _sqlite_fallback_path(path: str) -> str:
    if path == ":memory:":
        return path
    return str(Path(path).with_suffix(".sqlite"))
