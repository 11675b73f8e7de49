"""Tests for MigrationSettings and EngineConfig."""

from __future__ import annotations

import pydantic
import pytest

from migration_spine.config import EngineConfig
from migration_spine.connection import ConnectionRegistry, SqliteConnection
from migration_spine.dialect import SQLiteDialect
from migration_spine.lock_retrier import NullLockRetrier
from migration_spine.retry import NoBackoff
from migration_spine.settings import MigrationSettings


class TestMigrationSettings:
    def test_defaults(self):
        settings = MigrationSettings()
        assert settings.data_max_attempts == 5
        assert settings.stuck_timeout_seconds == 300
        assert settings.concurrency == 1
        assert settings.max_migrations_per_pass == 1
        assert not settings.run_inline

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("MIGRATION_SPINE_BATCH_SIZE", "250")
        monkeypatch.setenv("MIGRATION_SPINE_RUN_INLINE", "true")
        settings = MigrationSettings()
        assert settings.batch_size == 250
        assert settings.run_inline

    def test_validation(self):
        with pytest.raises(pydantic.ValidationError):
            MigrationSettings(batch_size=0)
        with pytest.raises(pydantic.ValidationError):
            MigrationSettings(stuck_timeout_seconds=0)


class TestEngineConfig:
    def test_defaults_from_database_url(self):
        config = EngineConfig(settings=MigrationSettings(database_url=":memory:"))
        assert isinstance(config.database, SqliteConnection)
        assert isinstance(config.database_dialect, SQLiteDialect)
        assert isinstance(config.retry_policy.backoff, NoBackoff)
        assert isinstance(config.lock_retrier, NullLockRetrier)
        assert not config.throttler()

    def test_database_is_primary_connection(self, conn):
        config = EngineConfig(connections=ConnectionRegistry.single(conn))
        assert config.database is conn

    def test_explicit_database(self, conn):
        other = SqliteConnection()
        config = EngineConfig(connections=ConnectionRegistry.single(conn), database=other)
        assert config.database is other
        assert isinstance(config.database_dialect, SQLiteDialect)

    def test_builtin_migrations_registered(self):
        config = EngineConfig(settings=MigrationSettings(database_url=":memory:"))
        assert "BackfillColumn" in config.data_migrations
