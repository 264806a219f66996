"""
Capacity enforcement for projmem.

Each entity kind has a count ceiling. Inserting past the ceiling silently
evicts the oldest entries of the same kind, inside the caller's write
transaction, so the store never exceeds its limits.

Eviction order:
    - decisions: createdAt ascending, ties by lowest id
    - patterns / context: updatedAt ascending, ties by name / key

Updating an existing pattern or context key never evicts.
"""

import logging
from dataclasses import dataclass
from typing import Any

from projmem.config import MemoryConfig
from projmem.schema import EntityKind
from projmem.store.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityLimits:
    """Count ceilings per entity kind."""

    max_decisions: int = 1000
    max_patterns: int = 500
    max_context_keys: int = 100

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "CapacityLimits":
        return cls(
            max_decisions=config.max_decisions,
            max_patterns=config.max_patterns,
            max_context_keys=config.max_context_keys,
        )

    def limit_for(self, kind: EntityKind) -> int:
        if kind is EntityKind.DECISION:
            return self.max_decisions
        if kind is EntityKind.PATTERN:
            return self.max_patterns
        return self.max_context_keys

    def to_dict(self) -> dict[str, int]:
        return {
            "maxDecisions": self.max_decisions,
            "maxPatterns": self.max_patterns,
            "maxContextKeys": self.max_context_keys,
        }


class CapacityManager:
    """
    Make room for one new entity before it is written.

    Usage:
        with backend.transaction(conn, locks=[DECISIONS]):
            capacity.before_insert(conn, EntityKind.DECISION)
            backend.insert_decision(conn, ...)

    Must be called inside the write transaction that performs the insert,
    holding the lock for the entity's table, so the count cannot change
    between the check and the insert.
    """

    def __init__(self, backend: StorageBackend, limits: CapacityLimits) -> None:
        self.backend = backend
        self.limits = limits

    def before_insert(self, conn: Any, kind: EntityKind, key: str | None = None) -> int:
        """
        Evict as needed so that one more entity of `kind` fits.

        Args:
            conn: Connection inside the write transaction
            kind: Entity kind about to be inserted
            key: Pattern name or context key; when it already exists the
                write is an update and nothing is evicted

        Returns:
            Number of entities evicted
        """
        if kind is EntityKind.PATTERN and key is not None:
            if self.backend.pattern_exists(conn, key):
                return 0
        elif kind is EntityKind.CONTEXT and key is not None:
            if self.backend.context_exists(conn, key):
                return 0

        limit = self.limits.limit_for(kind)
        count = self._count(conn, kind)
        if count < limit:
            return 0

        # A lowered limit can leave the store above its ceiling; shrink to fit
        excess = count - limit + 1
        evicted = self._evict(conn, kind, excess)
        logger.info(
            "Evicted %d %s entr%s at capacity (%d/%d)",
            evicted,
            kind.value,
            "y" if evicted == 1 else "ies",
            count,
            limit,
        )
        return evicted

    def usage(self, conn: Any) -> dict[str, int]:
        """Current counts per entity kind."""
        return {kind.value: self._count(conn, kind) for kind in EntityKind}

    def _count(self, conn: Any, kind: EntityKind) -> int:
        if kind is EntityKind.DECISION:
            return self.backend.count_decisions(conn)
        if kind is EntityKind.PATTERN:
            return self.backend.count_patterns(conn)
        return self.backend.count_context(conn)

    def _evict(self, conn: Any, kind: EntityKind, count: int) -> int:
        if kind is EntityKind.DECISION:
            return self.backend.delete_oldest_decisions(conn, count)
        if kind is EntityKind.PATTERN:
            return self.backend.delete_oldest_patterns(conn, count)
        return self.backend.delete_oldest_context(conn, count)
