"""
Pytest configuration and fixtures for projmem tests.

This module provides shared fixtures used across unit and integration
tests: temporary store locations, an open SQLite backend, a configured
MemoryStore with a controllable clock, and a Dispatcher over it.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from projmem.config import MemoryConfig
from projmem.dispatcher import Dispatcher
from projmem.engine import MemoryStore
from projmem.store.sqlite import SQLiteBackend


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    """Path for a fresh SQLite store file (not yet created)."""
    return temp_dir / "memory.db"


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock for rate limiter tests."""
    return FakeClock()


@pytest.fixture
def backend(db_path: Path) -> Generator[tuple[SQLiteBackend, object], None, None]:
    """An initialized SQLite backend and one open connection."""
    sqlite_backend = SQLiteBackend(str(db_path))
    conn = sqlite_backend.connect()
    sqlite_backend.init_schema(conn)
    yield sqlite_backend, conn
    conn.close()


@pytest.fixture
def config(db_path: Path) -> MemoryConfig:
    """Default limits on a temporary file store."""
    return MemoryConfig(location=str(db_path))


@pytest.fixture
def store(config: MemoryConfig, clock: FakeClock) -> Generator[MemoryStore, None, None]:
    """An open MemoryStore driven by the fake clock."""
    memory_store = MemoryStore(config, clock=clock)
    yield memory_store
    memory_store.close()


@pytest.fixture
def dispatcher(store: MemoryStore) -> Dispatcher:
    """A Dispatcher over the default store."""
    return Dispatcher(store)


@pytest.fixture
def make_store(temp_dir: Path, clock: FakeClock):
    """
    Factory for stores with custom limits.

    Every store created is closed at teardown.
    """
    created: list[MemoryStore] = []

    def _make(name: str = "custom.db", **settings) -> MemoryStore:
        cfg = MemoryConfig(location=str(temp_dir / name), **settings)
        memory_store = MemoryStore(cfg, clock=clock)
        created.append(memory_store)
        return memory_store

    yield _make

    for memory_store in created:
        memory_store.close()
