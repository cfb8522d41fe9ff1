"""Periodic background synchronization."""

import threading

import structlog

from .errors import PipelineError, RateLimitExceeded, SyncConflictError
from .sync_orchestrator import SyncOrchestrator

logger = structlog.get_logger()


class ScheduledSync:
    """One recurring sync, started on a daemon thread every ``interval_seconds``."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_seconds: float,
        projects: list[str] | None = None,
        incremental: bool = True,
    ) -> None:
        """Initialize scheduled sync."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.projects = list(projects) if projects else None
        self.incremental = incremental
        self.name = "incremental" if incremental else "full"
        self.last_session_id: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"sync-schedule-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds)
            self._thread = None

    def run_once(self) -> str | None:
        """Start one sync; returns its session id, or None when it could not start."""
        log = logger.bind(schedule=self.name, projects=self.projects or "*")
        log.info("Running scheduled sync")
        try:
            session_id = self.orchestrator.start_sync(
                self.projects,
                {"incremental": self.incremental},
                requester=f"scheduler:{self.name}",
            )
        except (SyncConflictError, RateLimitExceeded) as e:
            log.warning("Scheduled sync skipped", reason=str(e))
            return None
        except PipelineError as e:
            log.error("Scheduled sync failed", error=str(e), error_type=type(e).__name__)
            return None

        self.last_session_id = session_id
        return session_id

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()


class SyncScheduler:
    """Keeps at most one incremental and one full recurring sync."""

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        """Initialize scheduler."""
        self.orchestrator = orchestrator
        self._lock = threading.Lock()
        self._schedules: dict[str, ScheduledSync] = {}

    def schedule_sync(
        self,
        interval_seconds: float,
        incremental: bool = True,
        projects: list[str] | None = None,
    ) -> ScheduledSync:
        """Start a recurring sync, replacing any existing schedule of the same kind."""
        schedule = ScheduledSync(self.orchestrator, interval_seconds, projects, incremental)
        with self._lock:
            previous = self._schedules.pop(schedule.name, None)
            self._schedules[schedule.name] = schedule
        if previous is not None:
            previous.stop()

        schedule.start()
        logger.info("Sync scheduled", schedule=schedule.name, interval_seconds=interval_seconds)
        return schedule

    def stop_scheduled_syncs(self) -> int:
        """Stop every schedule. Returns how many were stopped."""
        with self._lock:
            schedules = list(self._schedules.items())
            self._schedules.clear()
        for name, schedule in schedules:
            schedule.stop()
            logger.info("Stopped scheduled sync", schedule=name)
        return len(schedules)

    def scheduled(self) -> list[str]:
        with self._lock:
            return sorted(self._schedules)
