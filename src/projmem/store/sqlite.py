"""
SQLite storage profile for projmem.

All data lives in a single SQLite database file in write-ahead-log mode:
any number of readers proceed alongside one writer, and concurrent writers
serialize inside the engine (BEGIN IMMEDIATE + busy timeout).

Tables:
    - schema_version: Layout version tracking
    - decisions: Decision records (+ decisions_fts FTS5 index kept in sync by triggers)
    - patterns: Reusable patterns keyed by name
    - context_entries: Key/value context

Why SQLite?
    - Zero configuration (no server needed)
    - ACID transactions built-in
    - Portable single-file format
    - FTS5 ships with the interpreter's sqlite3 module
"""

import logging
import sqlite3
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from projmem.errors import StorageConnectionError, StorageWriteError
from projmem.schema import Decision, StorageProfile
from projmem.store.base import StorageBackend
from projmem.validation import redact

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Decisions: append-only except for eviction, purge, and merge widening
CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    rationale TEXT NOT NULL DEFAULT '',
    tags_json TEXT NOT NULL DEFAULT '[]',
    content_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Patterns: upserted by name
CREATE TABLE IF NOT EXISTS patterns (
    name TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    example TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

-- Context: upserted by key
CREATE TABLE IF NOT EXISTS context_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Indexes for eviction order and merge lookups
CREATE INDEX IF NOT EXISTS idx_decisions_created_at ON decisions(created_at, id);
CREATE INDEX IF NOT EXISTS idx_decisions_content_hash ON decisions(content_hash);
CREATE INDEX IF NOT EXISTS idx_patterns_updated_at ON patterns(updated_at, name);
CREATE INDEX IF NOT EXISTS idx_context_updated_at ON context_entries(updated_at, key);

-- Full-text index over decision text + rationale
CREATE VIRTUAL TABLE IF NOT EXISTS decisions_fts
    USING fts5(text, rationale, content='decisions', content_rowid='id');

-- Keep the index in sync synchronously
CREATE TRIGGER IF NOT EXISTS decisions_ai AFTER INSERT ON decisions BEGIN
    INSERT INTO decisions_fts(rowid, text, rationale) VALUES (new.id, new.text, new.rationale);
END;

CREATE TRIGGER IF NOT EXISTS decisions_ad AFTER DELETE ON decisions BEGIN
    INSERT INTO decisions_fts(decisions_fts, rowid, text, rationale)
        VALUES ('delete', old.id, old.text, old.rationale);
END;

CREATE TRIGGER IF NOT EXISTS decisions_au AFTER UPDATE OF text, rationale ON decisions BEGIN
    INSERT INTO decisions_fts(decisions_fts, rowid, text, rationale)
        VALUES ('delete', old.id, old.text, old.rationale);
    INSERT INTO decisions_fts(rowid, text, rationale) VALUES (new.id, new.text, new.rationale);
END;
"""


class SQLiteBackend(StorageBackend):
    """
    Embedded single-file storage profile.

    Usage:
        backend = SQLiteBackend("memory.db")
        conn = backend.connect()
        backend.init_schema(conn)

    The location ":memory:" maps to a private shared-cache in-memory
    database, so every pooled connection sees the same data. It is meant
    for tests and one-shot tools; concurrent writers need a file.
    """

    profile = StorageProfile.SQLITE
    engine_errors = (sqlite3.Error,)

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self._in_memory = location == ":memory:"
        if self._in_memory:
            self._target = f"file:projmem-{uuid.uuid4().hex}?mode=memory&cache=shared"
        else:
            self._target = str(Path(location).expanduser())

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode with WAL and a busy timeout."""
        try:
            if not self._in_memory:
                Path(self._target).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self._target,
                uri=self._in_memory,
                check_same_thread=False,
                isolation_level=None,
                timeout=BUSY_TIMEOUT_MS / 1000,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
            return conn
        except (sqlite3.Error, OSError) as e:
            raise StorageConnectionError(
                operation="connect",
                backend=self.profile.value,
                message=f"Failed to open SQLite store: {redact(str(e))}",
            ) from e

    def reset(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.rollback()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(CREATE_TABLES_SQL)

    def _begin(self, conn: sqlite3.Connection, locks: Sequence[str]) -> None:
        # SQLite has one writer at a time; IMMEDIATE takes the write lock up front
        conn.execute("BEGIN IMMEDIATE")

    def _insert_decision_row(self, conn: sqlite3.Connection, params: tuple[Any, ...]) -> int:
        cursor = conn.execute(
            "INSERT INTO decisions (text, rationale, tags_json, content_hash, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            params,
        )
        return int(cursor.lastrowid)

    def _restart_ids(self, conn: sqlite3.Connection) -> None:
        self._execute(
            conn, "DELETE FROM sqlite_sequence WHERE name = 'decisions'", (), "restart_ids"
        )

    # =========================================================================
    # Search
    # =========================================================================

    def search_decisions(
        self, conn: sqlite3.Connection, terms: Sequence[str], limit: int
    ) -> list[tuple[Decision, float]]:
        """
        Match any term as a quoted FTS5 prefix query, ranked by bm25.

        Terms are quoted so that FTS5 operators in user input are inert.
        """
        if not terms:
            return []
        match = " OR ".join(f'"{term}"*' for term in terms)
        rows = self._fetchall(
            conn,
            """
            SELECT d.id, d.text, d.rationale, d.tags_json, d.created_at,
                   -bm25(decisions_fts) AS score
            FROM decisions_fts
            JOIN decisions d ON d.id = decisions_fts.rowid
            WHERE decisions_fts MATCH ?
            ORDER BY score DESC, d.created_at DESC, d.id DESC
            LIMIT ?
            """,
            (match, limit),
            "search_decisions",
        )
        return [(self._decision_from_row(row), float(row["score"])) for row in rows]

    def rebuild_search_index(self, conn: sqlite3.Connection) -> None:
        with self.transaction(conn, operation="rebuild_search_index"):
            conn.execute("INSERT INTO decisions_fts(decisions_fts) VALUES ('rebuild')")

    # =========================================================================
    # Maintenance
    # =========================================================================

    def integrity_check(self, conn: sqlite3.Connection) -> bool:
        rows = self._fetchall(conn, "PRAGMA integrity_check", (), "integrity_check")
        result = [row[0] for row in rows]
        if result != ["ok"]:
            logger.error("SQLite integrity check reported: %s", "; ".join(map(str, result[:5])))
            return False
        return True

    def vacuum(self, conn: sqlite3.Connection) -> None:
        self.reset(conn)
        try:
            conn.execute("VACUUM")
            if not self._in_memory:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="vacuum",
                underlying_error=redact(str(e)),
            ) from e

    def storage_size(self, conn: sqlite3.Connection) -> int:
        page_count = self._fetchone(conn, "PRAGMA page_count", (), "storage_size")[0]
        page_size = self._fetchone(conn, "PRAGMA page_size", (), "storage_size")[0]
        return int(page_count) * int(page_size)
