"""The explicit engine configuration value.

``EngineConfig`` is built once at process start and handed to the
Scheduler, the Step Runner and the engine facade. Nothing in the engine
reads configuration from module globals.

Example:
    >>> config = EngineConfig(
    ...     settings=MigrationSettings(batch_size=500),
    ...     connections=ConnectionRegistry.single(conn),
    ...     throttler=lambda: replication_lag() > 10,
    ...     error_handler=lambda error, record: sentry.capture_exception(error),
    ... )
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from migration_spine.backtrace import BacktraceCleaner
from migration_spine.connection import ConnectionRegistry, connect, dialect_for
from migration_spine.data_migrations import DataMigrationRegistry
from migration_spine.dialect import Dialect
from migration_spine.events import EventBus
from migration_spine.lock_retrier import LockRetrier, NullLockRetrier
from migration_spine.models import MigrationRecord, utc_now
from migration_spine.protocols import Connection
from migration_spine.retry import ExponentialBackoff, NoBackoff, RetryPolicy
from migration_spine.settings import MigrationSettings


def _never_throttle() -> bool:
    return False


def _ignore_error(error: BaseException, record: MigrationRecord) -> None:
    return None


def retry_policy_from_settings(settings: MigrationSettings) -> RetryPolicy:
    if settings.retry_base_delay_seconds > 0:
        backoff = ExponentialBackoff(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
    else:
        backoff = NoBackoff()
    return RetryPolicy(backoff=backoff, auto_retry_failed=settings.auto_retry_failed)


@dataclass
class EngineConfig:
    """Settings plus the collaborators the engine calls out to.

    Attributes:
        settings: Plain values (timeouts, attempts, batch size)
        connections: Target connections by (connection class, shard)
        database: Connection holding the migration tables (defaults to the primary)
        data_migrations: Registry resolving data migration names
        throttler: Returns True to skip the current step
        error_handler: Called once per terminal failure
        backtrace_cleaner: Filters persisted backtraces
        retry_policy: Backoff for errored records, auto retry of failed ones
        lock_retrier: Lock-timeout retries around schema statements
        events: Event bus for observability subscribers
        clock: Current UTC time
        sleep: Used for the pause between data migration steps
    """

    settings: MigrationSettings = field(default_factory=MigrationSettings)
    connections: ConnectionRegistry | None = None
    database: Connection | None = None
    database_dialect: Dialect | None = None
    data_migrations: DataMigrationRegistry = field(default_factory=DataMigrationRegistry.with_builtins)
    throttler: Callable[[], bool] = _never_throttle
    error_handler: Callable[[BaseException, MigrationRecord], Any] = _ignore_error
    backtrace_cleaner: BacktraceCleaner = field(default_factory=BacktraceCleaner)
    retry_policy: RetryPolicy | None = None
    lock_retrier: LockRetrier = field(default_factory=NullLockRetrier)
    events: EventBus = field(default_factory=EventBus)
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.connections is None:
            conn, dialect = connect(self.settings.database_url)
            self.connections = ConnectionRegistry.single(conn, dialect)
        if self.database is None:
            self.database, self.database_dialect = self.connections.primary()
        elif self.database_dialect is None:
            self.database_dialect = dialect_for(self.database)
        if self.retry_policy is None:
            self.retry_policy = retry_policy_from_settings(self.settings)


__all__ = ["EngineConfig", "retry_policy_from_settings"]
