"""Per-session progress fan-out with non-blocking publication."""

import queue
import threading
from collections.abc import Iterator
from typing import Any

import structlog

from .models import ProgressEvent

logger = structlog.get_logger()


class Subscription:
    """One observer's bounded view of a session's progress.

    When the buffer is full the oldest pending event is dropped, so a slow
    observer loses intermediate progress but never the terminal event.
    """

    def __init__(self, channel: "ProgressChannel", buffer_size: int) -> None:
        """Initialize subscription."""
        self._channel = channel
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=buffer_size)
        self.dropped = 0
        self.closed = False

    def offer(self, event: ProgressEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None when nothing arrived within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, poll_interval: float = 1.0) -> Iterator[ProgressEvent]:
        """Yield events until the terminal one, then detach."""
        try:
            while not self.closed:
                event = self.get(timeout=poll_interval)
                if event is None:
                    continue
                yield event
                if event.is_terminal:
                    break
        finally:
            self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ProgressChannel:
    """Broadcasts a strictly increasing sequence of events for one session."""

    def __init__(self, session_id: str, buffer_size: int = 256) -> None:
        """Initialize progress channel."""
        self.session_id = session_id
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []
        self._sequence = 0
        self._last_event: ProgressEvent | None = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Attach an observer; it receives every event published from now on.

        If the session already finished, the terminal event is replayed so the
        observer can close cleanly.
        """
        subscription = Subscription(self, self.buffer_size)
        with self._lock:
            if self._last_event is not None and self._last_event.is_terminal:
                subscription.offer(self._last_event)
            else:
                self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, **fields: Any) -> ProgressEvent:
        """Stamp the next sequence number and fan the event out."""
        with self._lock:
            self._sequence += 1
            event = ProgressEvent(sequence=self._sequence, session_id=self.session_id, **fields)
            self._last_event = event
            for subscription in self._subscribers:
                subscription.offer(event)
            if event.is_terminal:
                self._subscribers.clear()
        logger.debug(
            "Progress published",
            session_id=self.session_id,
            sequence=event.sequence,
            state=event.state.value,
        )
        return event
