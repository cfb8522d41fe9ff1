import threading

import pytest

from ticket_pipeline.config import RateLimitConfig
from ticket_pipeline.errors import RateLimitExceeded
from ticket_pipeline.rate_limiter import RateLimiter, RateLimitSweeper


def test_sixth_request_in_window_is_rejected(fake_clock):
    limiter = RateLimiter(5, 1.0, clock=fake_clock)

    for _ in range(5):
        assert limiter.check("client-a") is True
        fake_clock.advance(0.1)

    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.check("client-a")

    assert exc_info.value.retry_after >= 1
    assert exc_info.value.key == "client-a"


def test_admits_again_after_window_elapses(fake_clock):
    limiter = RateLimiter(5, 1.0, clock=fake_clock)
    for _ in range(5):
        limiter.check("client-a")

    fake_clock.advance(1.0)

    assert limiter.check("client-a") is True


def test_retry_after_is_ceiling_of_remaining_window(fake_clock):
    limiter = RateLimiter(2, 60, clock=fake_clock)
    limiter.check("k")
    fake_clock.advance(10.2)
    limiter.check("k")

    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.check("k")

    # Oldest entry expires 49.8s from now
    assert exc_info.value.retry_after == 50


def test_keys_are_independent(fake_clock):
    limiter = RateLimiter(1, 60, clock=fake_clock)
    limiter.check("a")

    assert limiter.check("b") is True
    with pytest.raises(RateLimitExceeded):
        limiter.check("a")


def test_remaining_counts_down(fake_clock):
    limiter = RateLimiter(3, 60, clock=fake_clock)
    assert limiter.remaining("x") == 3

    limiter.check("x")
    limiter.check("x")

    assert limiter.remaining("x") == 1


def test_sweep_drops_idle_keys_only(fake_clock):
    limiter = RateLimiter(5, 10, clock=fake_clock)
    limiter.check("idle")
    fake_clock.advance(11)
    limiter.check("busy")

    removed = limiter.sweep()

    assert removed == 1
    assert limiter.tracked_keys() == 1
    # A swept key starts over with a fresh window
    assert limiter.check("idle") is True
    assert limiter.remaining("idle") == 4


def test_concurrent_checks_never_over_admit():
    limiter = RateLimiter(50, 60)
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            try:
                limiter.check("shared")
            except RateLimitExceeded:
                continue
            with lock:
                admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(admitted) == 50


def test_from_config():
    limiter = RateLimiter.from_config(RateLimitConfig(max_requests=5, window_seconds=300), "sync")

    assert limiter.name == "sync"
    assert limiter.max_requests == 5
    assert limiter.window_seconds == 300


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        RateLimiter(0, 10)
    with pytest.raises(ValueError):
        RateLimiter(1, 0)


def test_sweeper_run_once_sweeps_every_limiter(fake_clock):
    first = RateLimiter(1, 5, clock=fake_clock)
    second = RateLimiter(1, 5, clock=fake_clock)
    first.check("a")
    second.check("b")
    fake_clock.advance(6)

    sweeper = RateLimitSweeper([first, second], interval_seconds=60)

    assert sweeper.run_once() == 2
    assert first.tracked_keys() == 0
    assert second.tracked_keys() == 0


def test_sweeper_thread_starts_and_stops():
    sweeper = RateLimitSweeper([RateLimiter(1, 1)], interval_seconds=0.01)
    sweeper.start()
    sweeper.stop()

    assert sweeper._thread is None
