"""
Unit tests for the fixed-window rate limiter.

Tests cover:
- Admission up to the budget
- Rejection with retry-after once spent
- Window reset after the window elapses
- Snapshot reporting
- Thread safety
"""

import threading

import pytest

from projmem.errors import RateLimitExceededError
from projmem.ratelimit import FixedWindowRateLimiter


class TestFixedWindow:
    """Tests for try_acquire."""

    def test_admits_up_to_max_ops(self, clock) -> None:
        limiter = FixedWindowRateLimiter(max_ops=3, window_seconds=60, clock=clock)
        for _ in range(3):
            limiter.try_acquire()

    def test_rejects_when_spent(self, clock) -> None:
        """The (max+1)th call in one window fails."""
        limiter = FixedWindowRateLimiter(max_ops=3, window_seconds=60, clock=clock)
        for _ in range(3):
            limiter.try_acquire()

        clock.advance(10)
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.try_acquire()
        assert exc_info.value.retry_after_seconds == pytest.approx(50)
        assert exc_info.value.max_ops == 3

    def test_rejected_calls_do_not_count(self, clock) -> None:
        limiter = FixedWindowRateLimiter(max_ops=1, window_seconds=60, clock=clock)
        limiter.try_acquire()
        for _ in range(5):
            with pytest.raises(RateLimitExceededError):
                limiter.try_acquire()
        assert limiter.snapshot()["count"] == 1

    def test_window_resets_after_elapsed(self, clock) -> None:
        """A full window later the budget is available again."""
        limiter = FixedWindowRateLimiter(max_ops=2, window_seconds=60, clock=clock)
        limiter.try_acquire()
        limiter.try_acquire()

        clock.advance(60)
        limiter.try_acquire()
        limiter.try_acquire()

        with pytest.raises(RateLimitExceededError):
            limiter.try_acquire()

    def test_window_not_reset_just_before_boundary(self, clock) -> None:
        limiter = FixedWindowRateLimiter(max_ops=1, window_seconds=60, clock=clock)
        limiter.try_acquire()
        clock.advance(59.9)
        with pytest.raises(RateLimitExceededError):
            limiter.try_acquire()

    def test_reset(self, clock) -> None:
        limiter = FixedWindowRateLimiter(max_ops=1, window_seconds=60, clock=clock)
        limiter.try_acquire()
        limiter.reset()
        limiter.try_acquire()

    @pytest.mark.parametrize("kwargs", [{"max_ops": 0}, {"window_seconds": 0}])
    def test_invalid_settings(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(**kwargs)


class TestSnapshot:
    """Tests for snapshot()."""

    def test_snapshot_does_not_consume(self, clock) -> None:
        limiter = FixedWindowRateLimiter(max_ops=5, window_seconds=60, clock=clock)
        limiter.try_acquire()
        clock.advance(15)

        snap = limiter.snapshot()
        assert snap == {
            "count": 1,
            "maxOps": 5,
            "windowSeconds": 60,
            "remaining": 4,
            "resetInSeconds": 45.0,
        }
        assert limiter.snapshot()["count"] == 1


class TestConcurrency:
    """Tests for concurrent admission."""

    def test_exactly_max_ops_admitted_across_threads(self) -> None:
        """No more than max_ops calls are admitted however they interleave."""
        limiter = FixedWindowRateLimiter(max_ops=50, window_seconds=3600)
        admitted = []
        rejected = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(10):
                try:
                    limiter.try_acquire()
                    outcome = admitted
                except RateLimitExceededError:
                    outcome = rejected
                with lock:
                    outcome.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 50
        assert len(rejected) == 30
