"""Sliding-window rate limiting for the API surface and the tracker sync path."""

import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable

import structlog

from .config import RateLimitConfig
from .errors import RateLimitExceeded

logger = structlog.get_logger()


class _Window:
    """Timestamps admitted for a single key."""

    __slots__ = ("lock", "timestamps", "retired")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.timestamps: deque[float] = deque()
        self.retired = False


class RateLimiter:
    """Per-key sliding-window admission gate.

    Each key owns its own lock, so checks for different keys never wait on
    each other. The periodic sweep retires windows with nothing left in range.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter."""
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    @classmethod
    def from_config(cls, config: RateLimitConfig, name: str) -> "RateLimiter":
        return cls(config.max_requests, config.window_seconds, name=name)

    def check(self, key: str) -> bool:
        """Admit one request for key or raise RateLimitExceeded."""
        while True:
            window = self._windows.setdefault(key, _Window())
            with window.lock:
                if window.retired:
                    # Swept between lookup and lock; take the fresh window
                    continue

                now = self._clock()
                self._trim(window, now)

                if len(window.timestamps) >= self.max_requests:
                    reset_at = window.timestamps[0] + self.window_seconds
                    retry_after = max(1, math.ceil(reset_at - now))
                    logger.warning(
                        "Rate limit exceeded",
                        limiter=self.name,
                        key=key,
                        retry_after=retry_after,
                    )
                    raise RateLimitExceeded(retry_after, key=key)

                window.timestamps.append(now)
                return True

    def remaining(self, key: str) -> int:
        """Requests still admissible for key in the current window."""
        window = self._windows.get(key)
        if window is None:
            return self.max_requests
        with window.lock:
            self._trim(window, self._clock())
            return max(0, self.max_requests - len(window.timestamps))

    def sweep(self) -> int:
        """Drop keys without in-window timestamps. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key, window in list(self._windows.items()):
            with window.lock:
                self._trim(window, now)
                if not window.timestamps:
                    window.retired = True
                    if self._windows.get(key) is window:
                        del self._windows[key]
                    removed += 1
        if removed:
            logger.debug("Rate limiter swept", limiter=self.name, removed=removed, active=len(self._windows))
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)

    def _trim(self, window: _Window, now: float) -> None:
        while window.timestamps and now - window.timestamps[0] >= self.window_seconds:
            window.timestamps.popleft()


class RateLimitSweeper:
    """Scheduled cleanup of one or more rate limiters."""

    def __init__(self, limiters: Iterable[RateLimiter], interval_seconds: float = 60) -> None:
        """Initialize sweeper."""
        self.limiters = list(limiters)
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
        self._thread.start()
        logger.info("Rate limit sweeper started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds)
            self._thread = None

    def run_once(self) -> int:
        return sum(limiter.sweep() for limiter in self.limiters)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
