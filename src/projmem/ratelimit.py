"""
Process-wide fixed-window rate limiter.

The limiter is checked before a pooled connection is acquired, so a
rejected call never touches the storage engine and costs O(1).

Limitations:
    - State is in memory only; a restart resets the window
    - Instances sharing one backing store do not coordinate
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from projmem.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


class FixedWindowRateLimiter:
    """
    Bound the number of operations per fixed time window.

    Usage:
        limiter = FixedWindowRateLimiter(max_ops=100, window_seconds=60)
        limiter.try_acquire()  # raises RateLimitExceededError when spent

    Attributes:
        max_ops: Operations allowed per window
        window_seconds: Window length in seconds
    """

    def __init__(
        self,
        max_ops: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            max_ops: Operations allowed per window
            window_seconds: Window length in seconds
            clock: Monotonic time source (injectable for tests)
        """
        if max_ops < 1:
            msg = "max_ops must be at least 1"
            raise ValueError(msg)
        if window_seconds <= 0:
            msg = "window_seconds must be positive"
            raise ValueError(msg)

        self.max_ops = max_ops
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = clock()
        self._count = 0

    def try_acquire(self) -> None:
        """
        Count one operation against the current window.

        Raises:
            RateLimitExceededError: If the window's budget is already spent
        """
        with self._lock:
            now = self._clock()
            self._roll_window(now)

            if self._count >= self.max_ops:
                retry_after = max(0.0, self._window_start + self.window_seconds - now)
                logger.warning(
                    "Rate limit exceeded: %d ops in %.0fs window", self._count, self.window_seconds
                )
                raise RateLimitExceededError(
                    max_ops=self.max_ops,
                    window_seconds=self.window_seconds,
                    retry_after_seconds=retry_after,
                )

            self._count += 1

    def snapshot(self) -> dict[str, Any]:
        """Report limiter state without consuming budget."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            return {
                "count": self._count,
                "maxOps": self.max_ops,
                "windowSeconds": self.window_seconds,
                "remaining": self.max_ops - self._count,
                "resetInSeconds": round(
                    max(0.0, self._window_start + self.window_seconds - now), 3
                ),
            }

    def reset(self) -> None:
        """Start a fresh window."""
        with self._lock:
            self._window_start = self._clock()
            self._count = 0

    def _roll_window(self, now: float) -> None:
        # Caller holds the lock
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._count = 0

    def __repr__(self) -> str:
        return f"<FixedWindowRateLimiter: {self.max_ops}/{self.window_seconds:g}s>"
