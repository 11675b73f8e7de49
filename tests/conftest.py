"""
Shared pytest fixtures for migration-spine tests.

This module provides:
- An in-memory SQLite database with the migration tables and a ``users`` table
- A controllable clock so stuck detection and backoff are deterministic
- A data migration registry with in-memory test migrations
- A fully wired ``MigrationEngine``

Usage:
    def test_something(engine, run_until_idle):
        engine.enqueue_data_migration("CollectNumbers", 5)
        run_until_idle()
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from migration_spine.batching import ListCollection
from migration_spine.config import EngineConfig
from migration_spine.connection import ConnectionRegistry, SqliteConnection
from migration_spine.data_migrations import DataMigrationRegistry
from migration_spine.engine import MigrationEngine
from migration_spine.models import MigrationRecord
from migration_spine.repository import MigrationRepository
from migration_spine.schema import create_tables
from migration_spine.settings import MigrationSettings


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Current time that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Database
# =============================================================================


USERS_DDL = """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY,
        name TEXT,
        email TEXT,
        nickname TEXT,
        admin INTEGER,
        posts_count INTEGER NOT NULL DEFAULT 0
    )
"""

POSTS_DDL = """
    CREATE TABLE posts (
        id INTEGER PRIMARY KEY,
        user_id INTEGER,
        title TEXT
    )
"""


def make_app_connection() -> SqliteConnection:
    """In-memory database with the application tables used by the tests."""
    conn = SqliteConnection()
    conn.execute(USERS_DDL)
    conn.execute(POSTS_DDL)
    conn.commit()
    return conn


@pytest.fixture()
def conn() -> SqliteConnection:
    """Database holding both the migration tables and the application tables."""
    conn = make_app_connection()
    create_tables(conn)
    yield conn
    conn.close()


@pytest.fixture()
def repository(conn, clock) -> MigrationRepository:
    return MigrationRepository(conn, clock=clock)


@pytest.fixture()
def users(conn) -> list[int]:
    """Five users; returns their ids."""
    conn.executemany(
        "INSERT INTO users (id, name, email, admin) VALUES (?, ?, ?, ?)",
        [(i, f"user{i}", f"user{i}@example.com", 0) for i in range(1, 6)],
    )
    conn.commit()
    return [1, 2, 3, 4, 5]


# =============================================================================
# Data migrations
# =============================================================================


class Recorder:
    """Collects what test migrations processed and which errors were reported."""

    def __init__(self) -> None:
        self.processed: list[Any] = []
        self.errors: list[tuple[BaseException, MigrationRecord]] = []
        self.sleeps: list[float] = []

    def error_handler(self, error: BaseException, record: MigrationRecord) -> None:
        self.errors.append((error, record))


class ExplodingCollection(ListCollection):
    """Raises while processing the item at ``fail_at``."""

    def __init__(self, items, processor, fail_at: int) -> None:
        super().__init__(items, processor)
        self.fail_at = fail_at

    def process(self, context, item) -> None:
        if item == self.fail_at:
            raise RuntimeError(f"cannot process {item}")
        super().process(context, item)


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture()
def registry(recorder) -> DataMigrationRegistry:
    registry = DataMigrationRegistry.with_builtins()
    registry.register(
        "CollectNumbers",
        lambda count: ListCollection(list(range(count)), recorder.processed.append),
    )
    registry.register(
        "ExplodingNumbers",
        lambda count, fail_at: ExplodingCollection(
            list(range(count)), recorder.processed.append, fail_at
        ),
    )
    return registry


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture()
def settings() -> MigrationSettings:
    return MigrationSettings(
        database_url=":memory:",
        batch_size=2,
        data_max_attempts=3,
        schema_max_attempts=3,
    )


@pytest.fixture()
def config(conn, clock, registry, recorder, settings) -> EngineConfig:
    return EngineConfig(
        settings=settings,
        connections=ConnectionRegistry.single(conn),
        data_migrations=registry,
        error_handler=recorder.error_handler,
        clock=clock,
        sleep=recorder.sleeps.append,
    )


@pytest.fixture()
def engine(config) -> MigrationEngine:
    return MigrationEngine(config)


@pytest.fixture()
def events(engine) -> list:
    """Every event the engine emits, in order."""
    received: list = []
    engine.events.subscribe("*", received.append)
    return received


@pytest.fixture()
def run_until_idle(engine):
    """Run Scheduler passes until one does nothing; returns the passes that did work."""

    def run(max_passes: int = 50) -> int:
        for passes in range(max_passes):
            if engine.run_scheduler().idle:
                return passes
        raise AssertionError(f"scheduler still busy after {max_passes} passes")

    return run
