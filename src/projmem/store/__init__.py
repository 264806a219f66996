"""
Storage module for projmem.

This module provides persistence for decisions, patterns, and context
entries behind a single StorageBackend contract, plus the connection pool
that owns the engine connections.

Tables:
    - schema_version: Layout version, written once at initialization
    - decisions: Decision records and their full-text index
    - patterns: Reusable patterns keyed by name
    - context_entries: Key/value context

Profiles:
    - sqlite (default): single file, WAL mode, no server needed
    - postgres: client/server, for multi-writer team deployments
"""

from projmem.errors import ConfigError
from projmem.schema import StorageProfile
from projmem.store.base import StorageBackend, decision_hash
from projmem.store.pool import ConnectionPool
from projmem.store.sqlite import SQLiteBackend


def create_backend(profile: StorageProfile | str, location: str) -> StorageBackend:
    """
    Build the backend for a storage profile.

    The PostgreSQL profile is imported lazily so that its driver is only
    needed when it is selected.
    """
    profile = StorageProfile(profile)
    if profile is StorageProfile.POSTGRES:
        try:
            from projmem.store.postgres import PostgresBackend
        except ImportError as e:
            raise ConfigError(
                message="The postgres profile needs psycopg: pip install \"projmem[postgres]\"",
                source="backend",
            ) from e

        return PostgresBackend(location)
    return SQLiteBackend(location)


__all__ = [
    "ConnectionPool",
    "SQLiteBackend",
    "StorageBackend",
    "create_backend",
    "decision_hash",
]
