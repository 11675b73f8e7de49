"""
MigrationEngine: the facade applications and the CLI talk to.

Wires the repository, Step Runner, Scheduler and queue from one
:class:`~migration_spine.config.EngineConfig`:

┌──────────────────────────────────────────────────────────────┐
│  MigrationEngine(config)                                     │
│     ├── repository  MigrationRepository(config.database)     │
│     ├── runner      StepRunner(config, repository)           │
│     ├── queue       InlineQueue | CeleryQueue                │
│     └── scheduler   Scheduler(config, repository, runner)    │
└──────────────────────────────────────────────────────────────┘

Example:
    >>> engine = MigrationEngine(EngineConfig(settings=MigrationSettings(database_url="sqlite:///app.db")))
    >>> engine.create_tables()
    >>> engine.enqueue_data_migration("BackfillColumn", "users", {"admin": False})
    >>> engine.run_scheduler()
"""

from __future__ import annotations

from typing import Any

from migration_spine.config import EngineConfig
from migration_spine.errors import DuplicateMigrationError, TableNotFoundError
from migration_spine.events import EventType
from migration_spine.lock import AdvisoryLock
from migration_spine.logging import get_logger
from migration_spine.models import (
    ACTIVE_STATUSES,
    DataMigrationRecord,
    MigrationKind,
    MigrationRecord,
    MigrationStatus,
    SchemaMigrationRecord,
)
from migration_spine.protocols import TaskQueue
from migration_spine.queue import InlineQueue
from migration_spine.repository import MigrationRepository
from migration_spine.retry import stuck_threshold
from migration_spine.runner import RunOutcome, StepRunner
from migration_spine.scheduler import PassReport, Scheduler
from migration_spine.schema import create_tables

logger = get_logger(__name__)


class MigrationEngine:
    """Enqueue, run and operate background migrations."""

    def __init__(self, config: EngineConfig | None = None, queue: TaskQueue | None = None) -> None:
        self.config = config or EngineConfig()
        self.settings = self.config.settings
        self.repository = MigrationRepository(
            self.config.database, self.config.database_dialect, clock=self.config.clock
        )
        self.runner = StepRunner(self.config, self.repository)
        self.queue = queue or InlineQueue(self.runner, self.repository)
        self.scheduler = Scheduler(self.config, self.repository, self.runner, self.queue)

    @property
    def events(self):
        return self.config.events

    def create_tables(self) -> None:
        create_tables(self.config.database, self.config.database_dialect)

    # -- Enqueue ----------------------------------------------------------------

    def enqueue_data_migration(
        self,
        migration_name: str,
        *arguments: Any,
        max_attempts: int | None = None,
        iteration_pause: float | None = None,
        connection_class_name: str | None = None,
    ) -> list[DataMigrationRecord]:
        """Create one record per shard of the target connection.

        Records that already exist are returned unchanged.

        Raises:
            UnknownDataMigrationError: ``migration_name`` is not registered.
        """
        self.config.data_migrations.named(migration_name)

        records = []
        for shard in self.config.connections.shard_names(connection_class_name):
            record = DataMigrationRecord(
                migration_name=migration_name,
                arguments=list(arguments),
                shard=shard,
                connection_class_name=connection_class_name,
                max_attempts=max_attempts or self.settings.data_max_attempts,
                iteration_pause=(
                    self.settings.iteration_pause_seconds if iteration_pause is None else iteration_pause
                ),
            )
            records.append(self._insert_or_find(record))

        if self.settings.run_inline:
            records = [self.run_to_completion(record) for record in records]
        return records

    def enqueue_schema_migration(
        self,
        migration_name: str,
        table_name: str,
        definition: str,
        *,
        max_attempts: int | None = None,
        statement_timeout: float | None = None,
        connection_class_name: str | None = None,
    ) -> SchemaMigrationRecord:
        """Create a schema migration, or a composite with one child per shard.

        Raises:
            TableNotFoundError: ``table_name`` does not exist on the target.
        """
        record = self.repository.find(MigrationKind.SCHEMA, migration_name, [], None)
        if record is None:
            record = self._create_schema_migration(
                migration_name,
                table_name,
                definition,
                max_attempts=max_attempts,
                statement_timeout=statement_timeout,
                connection_class_name=connection_class_name,
            )

        if self.settings.run_inline:
            record = self.run_to_completion(record)
        return record

    def _create_schema_migration(
        self,
        migration_name: str,
        table_name: str,
        definition: str,
        *,
        max_attempts: int | None,
        statement_timeout: float | None,
        connection_class_name: str | None,
    ) -> SchemaMigrationRecord:
        shards = self.config.connections.shard_names(connection_class_name)
        self._check_table_exists(table_name, connection_class_name, shards[0])

        sharded = shards != [None]
        record = SchemaMigrationRecord(
            migration_name=migration_name,
            table_name=table_name,
            definition=definition,
            statement_timeout=statement_timeout,
            connection_class_name=connection_class_name,
            max_attempts=max_attempts or self.settings.schema_max_attempts,
            composite=sharded,
        )
        record = self._insert_or_find(record)
        if sharded and not self.repository.children(record):
            for shard in shards:
                self._insert_or_find(record.child_for(shard))
        return record

    def _insert_or_find(self, record: MigrationRecord) -> MigrationRecord:
        try:
            return self.repository.insert(record)
        except DuplicateMigrationError:
            existing = self.repository.find(
                record.kind, record.migration_name, record.arguments, record.shard
            )
            if existing is None:
                raise
            logger.debug("migration_already_enqueued", migration_id=existing.id, kind=record.kind.value)
            return existing

    def _check_table_exists(
        self, table_name: str, connection_class_name: str | None, shard: str | None
    ) -> None:
        conn, dialect = self.config.connections.get(connection_class_name, shard)
        row = conn.execute(dialect.table_exists_query(), (table_name,)).fetchone()
        if row is None:
            raise TableNotFoundError(table_name)

    # -- Running ----------------------------------------------------------------

    def run_scheduler(self, shard: str | None = None, kind: MigrationKind | None = None) -> PassReport:
        """One Scheduler pass."""
        return self.scheduler.run(shard=shard, kind=kind)

    def run_to_completion(self, record: MigrationRecord) -> MigrationRecord:
        """Step ``record`` (each child of a composite in turn) until it stops.

        Failed records are retried and paused ones resumed first. Returns the
        reloaded record; it is ``succeeded`` unless a step failed for good,
        a throttle stopped it or a pause/cancel request arrived.
        """
        record = self.repository.reload(record)
        targets = self.repository.children(record) if record.composite else [record]
        for target in targets:
            self._run_record(target)
        return self.repository.reload(record)

    def _run_record(self, record: MigrationRecord) -> None:
        if record.status == MigrationStatus.FAILED:
            self.repository.retry(record)
        elif record.status == MigrationStatus.PAUSED:
            self.repository.resume(record)

        lock = AdvisoryLock(
            self.config.database,
            self.config.database_dialect,
            record.resource_key,
            ttl_seconds=stuck_threshold(record, self.settings),
            clock=self.config.clock,
        )
        with lock.try_with_lock() as acquired:
            if not acquired:
                logger.info("migration_locked", migration_id=record.id, key=record.resource_key)
                return
            while True:
                record = self.repository.reload(record)
                if record.status == MigrationStatus.ENQUEUED:
                    self.repository.claim(record)
                    self.events.emit(EventType.STARTED, record)
                elif record.status not in ACTIVE_STATUSES:
                    return
                outcome = self.runner.run(record)
                if outcome in (RunOutcome.THROTTLED, RunOutcome.SKIPPED):
                    return

    # -- Operator actions -----------------------------------------------------

    def get(self, kind: MigrationKind | str, record_id: int) -> MigrationRecord:
        return self.repository.get(MigrationKind(kind), record_id)

    def list(
        self,
        kind: MigrationKind | str,
        statuses: list[MigrationStatus] | None = None,
        *,
        top_level: bool = True,
    ) -> list[MigrationRecord]:
        return self.repository.list(MigrationKind(kind), statuses=statuses, top_level=top_level)

    def children(self, record: MigrationRecord) -> list[MigrationRecord]:
        return self.repository.children(record)

    def progress(self, record: MigrationRecord) -> float | None:
        return self.repository.progress(record)

    def retry(self, record: MigrationRecord) -> MigrationRecord:
        """``failed → enqueued`` with attempts, cursor and error reset."""
        self.repository.retry(record)
        self.events.emit(EventType.RETRIED, record, automatic=False)
        return record

    def pause(self, record: MigrationRecord) -> int:
        return self.repository.pause(record)

    def resume(self, record: MigrationRecord) -> int:
        return self.repository.resume(record)

    def cancel(self, record: MigrationRecord) -> int:
        return self.repository.cancel(record)


__all__ = ["MigrationEngine"]
