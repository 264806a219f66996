"""
Storage engine contract for projmem.

StorageBackend owns the table layout and every raw read/write against the
backing engine. Connections are owned by the ConnectionPool, so each
operation receives the connection it should use.

Design Principles:
    - Atomic: every write runs inside transaction(); a failed write leaves
      prior state unchanged
    - Redacted: engine exceptions are re-raised as Storage*Error with paths
      and credentials stripped
    - Portable: SQL shared by both profiles is written once here, using "?"
      placeholders; profiles translate where needed

Profiles:
    - SQLiteBackend: embedded file, WAL mode, FTS5 search index
    - PostgresBackend: client/server, tsvector search index
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from typing import Any

from projmem.errors import (
    SchemaVersionMismatchError,
    StorageReadError,
    StorageWriteError,
)
from projmem.schema import (
    SCHEMA_VERSION,
    ContextEntry,
    Decision,
    Pattern,
    StorageProfile,
    now_iso,
)
from projmem.validation import redact

logger = logging.getLogger(__name__)

# Tables that may be named in transaction(locks=...)
DECISIONS = "decisions"
PATTERNS = "patterns"
CONTEXT = "context_entries"
ALL_TABLES = (DECISIONS, PATTERNS, CONTEXT)

_DECISION_COLUMNS = "id, text, rationale, tags_json, created_at"


def decision_hash(text: str) -> str:
    """
    Content hash used to recognise the same decision across stores.

    Whitespace runs are collapsed and case is folded before hashing.
    """
    normalized = " ".join(text.split()).casefold()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class StorageBackend(ABC):
    """
    Abstract base for backing-engine profiles.

    Subclasses implement connection setup, schema DDL, the search index,
    and engine maintenance. Everything else is shared.

    Attributes:
        location: Resolved store location (file path or DSN)
        profile: Which StorageProfile this class implements
        engine_errors: Exception types raised by the engine's driver
    """

    profile: StorageProfile
    engine_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, location: str) -> None:
        self.location = location

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    @abstractmethod
    def connect(self) -> Any:
        """Open and configure one engine connection."""
        ...

    def close_connection(self, conn: Any) -> None:
        """Close one engine connection."""
        conn.close()

    def reset(self, conn: Any) -> None:
        """Roll back anything left open before a connection is reused."""
        conn.rollback()

    # =========================================================================
    # Schema
    # =========================================================================

    @abstractmethod
    def _create_schema(self, conn: Any) -> None:
        """Run the profile's idempotent DDL."""
        ...

    def init_schema(self, conn: Any) -> int:
        """
        Create tables if needed and verify the store's schema version.

        Returns:
            The schema version recorded in the store

        Raises:
            StorageWriteError: If the DDL fails
            SchemaVersionMismatchError: If the store was written by a newer layout
        """
        try:
            self._create_schema(conn)
            conn.execute(
                self._sql(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) "
                    "ON CONFLICT (version) DO NOTHING"
                ),
                (SCHEMA_VERSION, now_iso()),
            )
            conn.commit()
        except self.engine_errors as e:
            self.reset(conn)
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=redact(str(e)),
            ) from e

        version = self.schema_version(conn)
        if version > SCHEMA_VERSION:
            raise SchemaVersionMismatchError(
                message=(
                    f"Store uses schema version {version}, newer than the "
                    f"supported version {SCHEMA_VERSION}"
                ),
                expected=SCHEMA_VERSION,
                actual=version,
            )
        return version

    def schema_version(self, conn: Any) -> int:
        """Read the recorded schema version (0 if none)."""
        row = self._fetchone(
            conn, "SELECT MAX(version) AS version FROM schema_version", (), "schema_version"
        )
        return int(row["version"]) if row and row["version"] is not None else 0

    # =========================================================================
    # Transactions and statement helpers
    # =========================================================================

    @contextmanager
    def transaction(
        self,
        conn: Any,
        locks: Sequence[str] = (),
        operation: str = "transaction",
    ) -> Generator[None, None, None]:
        """
        Context manager for write transactions.

        Args:
            conn: Connection to run on
            locks: Tables to write-lock for the whole transaction
            operation: Name reported if the engine fails

        Raises:
            StorageWriteError: If the engine fails; the transaction is rolled back
        """
        for table in locks:
            if table not in ALL_TABLES:
                msg = f"Unknown table: {table}"
                raise ValueError(msg)

        try:
            self._begin(conn, locks)
            yield
            conn.commit()
        except self.engine_errors as e:
            self.reset(conn)
            raise StorageWriteError(
                operation=operation,
                underlying_error=redact(str(e)),
            ) from e
        except BaseException:
            self.reset(conn)
            raise

    @abstractmethod
    def _begin(self, conn: Any, locks: Sequence[str]) -> None:
        """Open a write transaction, taking the requested table locks."""
        ...

    def _sql(self, sql: str) -> str:
        """Translate portable SQL to the profile's dialect."""
        return sql

    def _fetchall(self, conn: Any, sql: str, params: Sequence[Any], operation: str) -> list[Any]:
        try:
            return conn.execute(self._sql(sql), tuple(params)).fetchall()
        except self.engine_errors as e:
            raise StorageReadError(
                operation=operation,
                underlying_error=redact(str(e)),
            ) from e

    def _fetchone(self, conn: Any, sql: str, params: Sequence[Any], operation: str) -> Any:
        rows = self._fetchall(conn, sql, params, operation)
        return rows[0] if rows else None

    def _execute(self, conn: Any, sql: str, params: Sequence[Any], operation: str) -> int:
        """Run a write statement and return the affected row count."""
        try:
            return conn.execute(self._sql(sql), tuple(params)).rowcount
        except self.engine_errors as e:
            raise StorageWriteError(
                operation=operation,
                underlying_error=redact(str(e)),
            ) from e

    def _count(self, conn: Any, table: str) -> int:
        row = self._fetchone(conn, f"SELECT COUNT(*) AS n FROM {table}", (), f"count_{table}")
        return int(row["n"])

    # =========================================================================
    # Decision Operations
    # =========================================================================

    @abstractmethod
    def _insert_decision_row(self, conn: Any, params: tuple[Any, ...]) -> int:
        """Insert (text, rationale, tags_json, content_hash, created_at); return the new id."""
        ...

    def insert_decision(
        self,
        conn: Any,
        text: str,
        rationale: str,
        tags: list[str],
        created_at: str | None = None,
    ) -> int:
        """
        Insert a decision.

        Args:
            conn: Connection (inside a transaction)
            text: Sanitized decision text
            rationale: Sanitized rationale ("" when absent)
            tags: Normalized tags
            created_at: Preserved timestamp (imports); defaults to now

        Returns:
            The engine-assigned id
        """
        params = (
            text,
            rationale,
            json.dumps(tags),
            decision_hash(text),
            created_at or now_iso(),
        )
        try:
            return self._insert_decision_row(conn, params)
        except self.engine_errors as e:
            raise StorageWriteError(
                operation="insert_decision",
                underlying_error=redact(str(e)),
            ) from e

    def list_decisions(self, conn: Any, limit: int | None = None) -> list[Decision]:
        """List decisions newest first (createdAt desc, then id desc)."""
        sql = f"SELECT {_DECISION_COLUMNS} FROM decisions ORDER BY created_at DESC, id DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        rows = self._fetchall(conn, sql, params, "list_decisions")
        return [self._decision_from_row(row) for row in rows]

    def get_decision_by_hash(self, conn: Any, content_hash: str) -> Decision | None:
        """Find the earliest decision with the given content hash."""
        row = self._fetchone(
            conn,
            f"SELECT {_DECISION_COLUMNS} FROM decisions WHERE content_hash = ? "
            "ORDER BY id ASC LIMIT 1",
            (content_hash,),
            "get_decision_by_hash",
        )
        return self._decision_from_row(row) if row else None

    def update_decision(self, conn: Any, decision_id: int, rationale: str, tags: list[str]) -> None:
        """Widen a decision during merge (rationale and tags only)."""
        self._execute(
            conn,
            "UPDATE decisions SET rationale = ?, tags_json = ? WHERE id = ?",
            (rationale, json.dumps(tags), decision_id),
            "update_decision",
        )

    def delete_oldest_decisions(self, conn: Any, count: int = 1) -> int:
        """Delete the `count` oldest decisions (createdAt asc, ties by lowest id)."""
        return self._execute(
            conn,
            "DELETE FROM decisions WHERE id IN ("
            "SELECT id FROM decisions ORDER BY created_at ASC, id ASC LIMIT ?)",
            (count,),
            "delete_oldest_decisions",
        )

    def count_decisions(self, conn: Any) -> int:
        return self._count(conn, DECISIONS)

    @abstractmethod
    def search_decisions(
        self, conn: Any, terms: Sequence[str], limit: int
    ) -> list[tuple[Decision, float]]:
        """Full-text match any of `terms` (prefix match); return (decision, score) pairs."""
        ...

    @abstractmethod
    def rebuild_search_index(self, conn: Any) -> None:
        """Rebuild the decision search index from the decisions table."""
        ...

    # =========================================================================
    # Pattern Operations
    # =========================================================================

    def upsert_pattern(
        self,
        conn: Any,
        name: str,
        description: str,
        example: str,
        updated_at: str | None = None,
    ) -> None:
        """Create or replace a pattern by name."""
        self._execute(
            conn,
            "INSERT INTO patterns (name, description, example, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (name) DO UPDATE SET description = excluded.description, "
            "example = excluded.example, updated_at = excluded.updated_at",
            (name, description, example, updated_at or now_iso()),
            "upsert_pattern",
        )

    def get_pattern(self, conn: Any, name: str) -> Pattern | None:
        row = self._fetchone(
            conn,
            "SELECT name, description, example, updated_at FROM patterns WHERE name = ?",
            (name,),
            "get_pattern",
        )
        return self._pattern_from_row(row) if row else None

    def list_patterns(self, conn: Any) -> list[Pattern]:
        """List patterns, most recently updated first."""
        rows = self._fetchall(
            conn,
            "SELECT name, description, example, updated_at FROM patterns "
            "ORDER BY updated_at DESC, name ASC",
            (),
            "list_patterns",
        )
        return [self._pattern_from_row(row) for row in rows]

    def pattern_exists(self, conn: Any, name: str) -> bool:
        row = self._fetchone(
            conn, "SELECT 1 AS present FROM patterns WHERE name = ?", (name,), "pattern_exists"
        )
        return row is not None

    def delete_pattern(self, conn: Any, name: str) -> bool:
        return self._execute(
            conn, "DELETE FROM patterns WHERE name = ?", (name,), "delete_pattern"
        ) > 0

    def delete_oldest_patterns(self, conn: Any, count: int = 1) -> int:
        """Delete the least recently updated patterns (ties by name)."""
        return self._execute(
            conn,
            "DELETE FROM patterns WHERE name IN ("
            "SELECT name FROM patterns ORDER BY updated_at ASC, name ASC LIMIT ?)",
            (count,),
            "delete_oldest_patterns",
        )

    def count_patterns(self, conn: Any) -> int:
        return self._count(conn, PATTERNS)

    # =========================================================================
    # Context Operations
    # =========================================================================

    def upsert_context(
        self, conn: Any, key: str, value: str, updated_at: str | None = None
    ) -> None:
        """Create or replace a context entry by key."""
        self._execute(
            conn,
            "INSERT INTO context_entries (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (key, value, updated_at or now_iso()),
            "upsert_context",
        )

    def get_context(self, conn: Any, key: str) -> ContextEntry | None:
        row = self._fetchone(
            conn,
            "SELECT key, value, updated_at FROM context_entries WHERE key = ?",
            (key,),
            "get_context",
        )
        return self._context_from_row(row) if row else None

    def list_context(self, conn: Any) -> list[ContextEntry]:
        rows = self._fetchall(
            conn,
            "SELECT key, value, updated_at FROM context_entries ORDER BY key ASC",
            (),
            "list_context",
        )
        return [self._context_from_row(row) for row in rows]

    def context_exists(self, conn: Any, key: str) -> bool:
        row = self._fetchone(
            conn,
            "SELECT 1 AS present FROM context_entries WHERE key = ?",
            (key,),
            "context_exists",
        )
        return row is not None

    def delete_context(self, conn: Any, key: str | None = None) -> int:
        """Delete one context entry, or all of them when key is None."""
        if key is None:
            return self._execute(conn, "DELETE FROM context_entries", (), "clear_context")
        return self._execute(
            conn, "DELETE FROM context_entries WHERE key = ?", (key,), "delete_context"
        )

    def delete_oldest_context(self, conn: Any, count: int = 1) -> int:
        """Delete the least recently updated context entries (ties by key)."""
        return self._execute(
            conn,
            "DELETE FROM context_entries WHERE key IN ("
            "SELECT key FROM context_entries ORDER BY updated_at ASC, key ASC LIMIT ?)",
            (count,),
            "delete_oldest_context",
        )

    def count_context(self, conn: Any) -> int:
        return self._count(conn, CONTEXT)

    # =========================================================================
    # Whole-store Operations
    # =========================================================================

    def purge_all(self, conn: Any) -> dict[str, int]:
        """
        Delete every decision, pattern, and context entry.

        Must run inside a transaction. The schema_version row is kept and id
        numbering restarts, so the store is equivalent to a fresh one.

        Returns:
            Rows removed per entity kind
        """
        removed = {
            "decisions": self._execute(conn, "DELETE FROM decisions", (), "purge_decisions"),
            "patterns": self._execute(conn, "DELETE FROM patterns", (), "purge_patterns"),
            "context": self._execute(conn, "DELETE FROM context_entries", (), "purge_context"),
        }
        self._restart_ids(conn)
        return removed

    @abstractmethod
    def _restart_ids(self, conn: Any) -> None:
        """Make the next decision id 1 again (table must be empty)."""
        ...

    @abstractmethod
    def integrity_check(self, conn: Any) -> bool:
        """Run the engine's read-only consistency check."""
        ...

    @abstractmethod
    def vacuum(self, conn: Any) -> None:
        """Reclaim free space. Must not be called inside a transaction."""
        ...

    @abstractmethod
    def storage_size(self, conn: Any) -> int:
        """Approximate size of the stored data in bytes."""
        ...

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _decision_from_row(row: Any) -> Decision:
        return Decision(
            id=row["id"],
            text=row["text"],
            rationale=row["rationale"] or "",
            tags=json.loads(row["tags_json"] or "[]"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _pattern_from_row(row: Any) -> Pattern:
        return Pattern(
            name=row["name"],
            description=row["description"],
            example=row["example"] or "",
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _context_from_row(row: Any) -> ContextEntry:
        return ContextEntry(
            key=row["key"],
            value=row["value"],
            updated_at=row["updated_at"],
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.profile.value}>"
