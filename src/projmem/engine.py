"""
Memory store for projmem.

MemoryStore is the single owner of every resource a running store needs:
- Storage backend: The selected engine profile
- Connection pool: The engine connections
- Rate limiter: The per-process operation budget
- Capacity manager and search engine: Stateless helpers over the backend

Lifecycle:
    1. Construct from a resolved MemoryConfig (opens the pool and
       initializes the schema)
    2. Hand it to a Dispatcher
    3. close() it, or use it as a context manager

There are no module-level singletons; two stores in one process are
fully independent.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from projmem.capacity import CapacityLimits, CapacityManager
from projmem.config import MemoryConfig
from projmem.ratelimit import FixedWindowRateLimiter
from projmem.search import DecisionSearch
from projmem.store import ConnectionPool, StorageBackend, create_backend
from projmem.validation import redact

logger = logging.getLogger(__name__)


class MemoryStore:
    """
    An open memory store.

    Usage:
        with MemoryStore(load_config()) as store:
            dispatcher = Dispatcher(store)
            dispatcher.call("store_decision", {"text": "Use Redis for caching"})

    Attributes:
        config: The configuration the store was opened with
        backend: Storage engine profile
        pool: Connection pool
        limiter: Fixed-window rate limiter
        capacity: Capacity manager
        search: Decision search engine
        schema_version: Schema version recorded in the store
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        backend: StorageBackend | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Open the store.

        Args:
            config: Resolved configuration (defaults to MemoryConfig())
            backend: Pre-built backend (defaults to the configured profile)
            clock: Time source for the rate limiter (tests)

        Raises:
            StorageConnectionError: If the backing store cannot be opened
            SchemaVersionMismatchError: If the store has a newer layout
        """
        self.config = config or MemoryConfig()
        self.backend = backend or create_backend(self.config.backend, self.config.location)
        self.pool = ConnectionPool(
            self.backend.connect,
            size=self.config.pool_size,
            reset=self.backend.reset,
            closer=self.backend.close_connection,
        )

        try:
            with self.pool.connection(self.config.pool_timeout_seconds) as conn:
                self.schema_version = self.backend.init_schema(conn)
        except BaseException:
            self.pool.close()
            raise

        limiter_kwargs: dict[str, Any] = {}
        if clock is not None:
            limiter_kwargs["clock"] = clock
        self.limiter = FixedWindowRateLimiter(
            max_ops=self.config.rate_limit_max_ops,
            window_seconds=self.config.rate_limit_window_seconds,
            **limiter_kwargs,
        )
        self.limits = CapacityLimits.from_config(self.config)
        self.capacity = CapacityManager(self.backend, self.limits)
        self.search = DecisionSearch(self.backend)

        logger.info(
            "Opened %s store at %s (schema v%d, pool of %d)",
            self.backend.profile.value,
            redact(self.config.location),
            self.schema_version,
            self.config.pool_size,
        )

    def connection(self) -> AbstractContextManager[Any]:
        """Borrow a pooled connection for the configured timeout."""
        return self.pool.connection(self.config.pool_timeout_seconds)

    # =========================================================================
    # Maintenance (administrative; not exposed as tool operations)
    # =========================================================================

    def vacuum(self) -> None:
        """Reclaim free space in the backing store."""
        with self.connection() as conn:
            self.backend.vacuum(conn)
        logger.info("Vacuumed %s store", self.backend.profile.value)

    def rebuild_search_index(self) -> None:
        """Rebuild the decision search index from the decisions table."""
        with self.connection() as conn:
            self.search.rebuild(conn)

    def close(self) -> None:
        """Close every pooled connection."""
        if not self.pool.closed:
            self.pool.close()
            logger.info("Closed %s store", self.backend.profile.value)

    @property
    def closed(self) -> bool:
        return self.pool.closed

    def __enter__(self) -> "MemoryStore":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    def __repr__(self) -> str:
        return f"<MemoryStore: {self.backend.profile.value}, {self.pool!r}>"
