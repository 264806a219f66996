"""
Bounded pool of reusable storage connections.

Every connection is opened once when the pool is built and reused for the
pool's lifetime. acquire() blocks up to a timeout; connection() guarantees
release on every exit path.

The pool does not serialize writers. With the SQLite profile the engine
allows one writer at a time, and a small pool keeps contention bounded.
"""

import logging
import queue
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

from projmem.errors import PoolTimeoutError, ProjmemError, StorageConnectionError

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_ACQUIRE_TIMEOUT = 5.0


class ConnectionPool:
    """
    Fixed-size pool of engine connections.

    Usage:
        pool = ConnectionPool(backend.connect, size=5, reset=backend.reset)
        with pool.connection(timeout=2.0) as conn:
            ...
        pool.close()

    Attributes:
        size: Number of connections owned by the pool
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        size: int = DEFAULT_POOL_SIZE,
        reset: Callable[[Any], None] | None = None,
        closer: Callable[[Any], None] | None = None,
    ) -> None:
        """
        Open `size` connections.

        Args:
            factory: Opens one connection
            size: Number of connections
            reset: Called on each connection before it is returned to the pool
            closer: Closes one connection (defaults to conn.close())

        Raises:
            ValueError: If size < 1
            StorageConnectionError: If any connection fails to open; the ones
                already opened are closed first
        """
        if size < 1:
            msg = "Pool size must be at least 1"
            raise ValueError(msg)

        self.size = size
        self._factory = factory
        self._reset = reset
        self._closer = closer or (lambda conn: conn.close())
        self._idle: queue.Queue[Any] = queue.Queue(maxsize=size)
        self._lock = threading.Lock()
        self._in_use = 0
        self._closed = False

        opened: list[Any] = []
        try:
            for _ in range(size):
                opened.append(factory())
        except BaseException:
            for conn in opened:
                self._closer(conn)
            raise

        for conn in opened:
            self._idle.put_nowait(conn)
        logger.debug("Opened connection pool with %d connections", size)

    def acquire(self, timeout: float = DEFAULT_ACQUIRE_TIMEOUT) -> Any:
        """
        Take a connection, waiting up to `timeout` seconds.

        Raises:
            PoolTimeoutError: If none became available in time
            StorageConnectionError: If the pool is closed
        """
        if self._closed:
            raise StorageConnectionError(operation="acquire", message="Connection pool is closed")

        try:
            conn = self._idle.get(timeout=timeout)
        except queue.Empty:
            logger.warning("Timed out after %.2fs waiting for a pooled connection", timeout)
            raise PoolTimeoutError(timeout_seconds=timeout) from None

        with self._lock:
            self._in_use += 1
        return conn

    def release(self, conn: Any) -> None:
        """
        Return a connection to the pool.

        The connection is reset first. A connection that cannot be reset is
        replaced with a fresh one; after close() it is closed instead.
        """
        with self._lock:
            self._in_use -= 1
            closed = self._closed

        if closed:
            self._closer(conn)
            return

        try:
            if self._reset is not None:
                self._reset(conn)
        except Exception:
            logger.warning("Discarding pooled connection that failed to reset", exc_info=True)
            self._closer(conn)
            conn = self._replacement()
            if conn is None:
                return

        # close() sets the flag under the same lock, then drains the queue
        with self._lock:
            if not self._closed:
                self._idle.put_nowait(conn)
                return
        self._closer(conn)

    @contextmanager
    def connection(
        self, timeout: float = DEFAULT_ACQUIRE_TIMEOUT
    ) -> Generator[Any, None, None]:
        """Acquire a connection for the duration of a with-block."""
        conn = self.acquire(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    def close(self) -> None:
        """Close idle connections; in-use ones are closed when released."""
        with self._lock:
            self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._closer(conn)
        logger.debug("Closed connection pool")

    def stats(self) -> dict[str, Any]:
        """Report pool liveness without touching any connection."""
        with self._lock:
            in_use = self._in_use
        return {
            "size": self.size,
            "available": self._idle.qsize(),
            "inUse": in_use,
            "closed": self._closed,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    def _replacement(self) -> Any | None:
        try:
            return self._factory()
        except ProjmemError:
            logger.error("Could not reopen a pooled connection; pool shrinks by one")
            with self._lock:
                self.size -= 1
            return None

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        stats = self.stats()
        return f"<ConnectionPool: {stats['available']}/{stats['size']} available>"
