"""
Step Runner: executes exactly one step of one migration record.

Contract: ``run(record) -> RunOutcome``. The record must be ``running``
(the Scheduler performs ``enqueued → running``). A record in ``pausing`` or
``cancelling`` is finalized to ``paused``/``cancelled`` instead, which is
how a pause or cancel request is observed between steps. Every side effect
is persisted before ``run`` returns, including on failure.

Data step::

    throttled? ──yes──▶ emit throttled, return
        │
    next unit from the stored cursor ──none──▶ succeeded
        │
    process unit, commit target, persist cursor/ticks/time
        │
    pause iteration_pause, observe pausing/cancelling

Schema step::

    throttled? ──yes──▶ emit throttled, return
        │
    connection for (connection_class_name, shard)
        │
    index addition? valid index exists ──▶ succeeded
                    invalid index exists ──▶ drop it
        │
    SET statement_timeout, execute DDL through the lock retrier, restore
        │
    succeeded

Failure (both kinds): the error is recorded by class, message and cleaned
backtrace and ``attempts`` goes up by one. When attempts are exhausted the
record becomes ``failed`` and the error handler is called. Otherwise it
stays ``running`` until the retry policy makes it eligible again. With
``run_inline`` the error is re-raised after it has been recorded.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from migration_spine.backtrace import format_backtrace
from migration_spine.batching import BatchCursor, MigrationContext
from migration_spine.config import EngineConfig
from migration_spine.dialect import Dialect
from migration_spine.errors import ExecutionError, StaleRecordError, error_class_name
from migration_spine.events import EventType
from migration_spine.logging import LogContext, get_logger
from migration_spine.models import (
    STOPPING_STATUSES,
    DataMigrationRecord,
    MigrationRecord,
    MigrationStatus,
    SchemaMigrationRecord,
)
from migration_spine.protocols import Connection
from migration_spine.repository import MigrationRepository

logger = get_logger(__name__)

T = TypeVar("T")

_CLEARED_ERROR = {"error_class": None, "error_message": None, "backtrace": None}


class RunOutcome(str, Enum):
    THROTTLED = "throttled"
    PROGRESSED = "progressed"
    SUCCEEDED = "succeeded"
    ERRORED = "errored"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class StepRunner:
    def __init__(self, config: EngineConfig, repository: MigrationRepository) -> None:
        self.config = config
        self.settings = config.settings
        self.repository = repository
        self.events = config.events

    def run(self, record: MigrationRecord) -> RunOutcome:
        if record.composite:
            raise ExecutionError("composite migrations have no steps of their own")

        with LogContext(
            migration_id=record.id,
            migration_name=record.migration_name,
            kind=record.kind.value,
            shard=record.shard,
        ):
            if record.status in STOPPING_STATUSES:
                return self._finalize_stop(record)
            if record.status != MigrationStatus.RUNNING:
                logger.info("migration_step_skipped", status=record.status.value)
                return RunOutcome.SKIPPED

            if self.config.throttler():
                self.events.emit(EventType.THROTTLED, record)
                return RunOutcome.THROTTLED

            if isinstance(record, DataMigrationRecord):
                return self._run_data(record)
            return self._run_schema(record)

    # -- Data migrations ----------------------------------------------------

    def _run_data(self, record: DataMigrationRecord) -> RunOutcome:
        conn, dialect = self.config.connections.get(record.connection_class_name, record.shard)
        try:
            capability = self.config.data_migrations.build(record.migration_name, record.arguments)
            batches = BatchCursor(
                capability, MigrationContext(conn, dialect, record), self.settings.batch_size
            )
            if record.tick_total is None and record.tick_count == 0:
                total = batches.count()
                if total is not None:
                    self.repository.update(record, tick_total=total)

            unit = batches.next_unit(record.cursor)
            if unit is not None:
                self.events.emit(EventType.RUN, record, cursor=unit.cursor_before, ticks=unit.ticks)
                started = time.monotonic()
                batches.execute(unit)
                conn.commit()
                duration = time.monotonic() - started
        except Exception as e:
            return self._handle_failure(record, conn, e)

        if unit is None:
            return self._succeed(record)

        self.repository.update(
            record,
            cursor=unit.cursor_after,
            tick_count=record.tick_count + unit.ticks,
            time_running=record.time_running + duration,
            **_CLEARED_ERROR,
        )
        logger.debug("migration_step_finished", ticks=unit.ticks, cursor=unit.cursor_after)

        if record.iteration_pause > 0:
            self.config.sleep(record.iteration_pause)

        return self._observe_stop_request(record) or RunOutcome.PROGRESSED

    # -- Schema migrations --------------------------------------------------

    def _run_schema(self, record: SchemaMigrationRecord) -> RunOutcome:
        conn, dialect = self.config.connections.get(record.connection_class_name, record.shard)
        # Fresh heartbeat for this attempt.
        self.repository.update(record, **_CLEARED_ERROR)
        try:
            self.events.emit(EventType.RUN, record)
            if record.index_addition and self._valid_index_exists(record, conn, dialect):
                logger.info("index_already_exists", index=record.index_name)
            else:
                timeout = record.statement_timeout or self.settings.statement_timeout_seconds
                self._with_statement_timeout(
                    conn,
                    dialect,
                    timeout,
                    lambda: self.config.lock_retrier.with_lock_retries(
                        conn, dialect, lambda: conn.execute(record.definition)
                    ),
                )
                conn.commit()
        except Exception as e:
            if record.index_addition:
                self._drop_invalid_index(record, conn, dialect)
            return self._handle_failure(record, conn, e)

        return self._succeed(record)

    def _index_validity(self, record: SchemaMigrationRecord, conn: Connection, dialect: Dialect) -> bool | None:
        """True/False for an existing valid/invalid index, None when absent."""
        row = conn.execute(
            dialect.index_validity_query(), (record.table_name, record.index_name)
        ).fetchone()
        if row is None:
            return None
        return bool(row[0])

    def _valid_index_exists(self, record: SchemaMigrationRecord, conn: Connection, dialect: Dialect) -> bool:
        valid = self._index_validity(record, conn, dialect)
        if valid is False:
            logger.warning("dropping_invalid_index", index=record.index_name)
            conn.execute(dialect.drop_index_sql(record.index_name))
            conn.commit()
        return bool(valid)

    def _drop_invalid_index(self, record: SchemaMigrationRecord, conn: Connection, dialect: Dialect) -> None:
        """Remove what a failed concurrent index build left behind."""
        try:
            conn.rollback()
            if self._index_validity(record, conn, dialect) is False:
                logger.warning("dropping_invalid_index", index=record.index_name)
                conn.execute(dialect.drop_index_sql(record.index_name))
                conn.commit()
        except Exception as e:
            # The next attempt checks again before executing.
            logger.warning("invalid_index_cleanup_failed", index=record.index_name, error=str(e))
            conn.rollback()

    def _with_statement_timeout(
        self,
        conn: Connection,
        dialect: Dialect,
        seconds: float | None,
        block: Callable[[], T],
    ) -> T:
        show_sql = dialect.show_statement_timeout_sql()
        if seconds is None or show_sql is None:
            return block()
        previous = conn.execute(show_sql).fetchone()[0]
        conn.execute(dialect.set_statement_timeout_sql(math.ceil(seconds * 1000)))
        try:
            return block()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.execute(dialect.set_statement_timeout_sql(previous))

    # -- Outcomes -------------------------------------------------------------

    def _succeed(self, record: MigrationRecord) -> RunOutcome:
        try:
            self.repository.transition(
                record, MigrationStatus.SUCCEEDED, finished_at=self.config.clock()
            )
        except StaleRecordError:
            return self._observe_stop_request(record) or RunOutcome.SKIPPED

        self.events.emit(EventType.COMPLETED, record)
        self._refresh_parent(record)
        return RunOutcome.SUCCEEDED

    def _observe_stop_request(self, record: MigrationRecord) -> RunOutcome | None:
        fresh = self.repository.reload(record)
        record.__dict__.update(fresh.__dict__)
        if record.status in STOPPING_STATUSES:
            return self._finalize_stop(record)
        return None

    def _finalize_stop(self, record: MigrationRecord) -> RunOutcome:
        if record.status == MigrationStatus.PAUSING:
            target, outcome = MigrationStatus.PAUSED, RunOutcome.PAUSED
        else:
            target, outcome = MigrationStatus.CANCELLED, RunOutcome.CANCELLED
        self.repository.transition(record, target)
        logger.info(f"migration_{target.value}")
        self._refresh_parent(record)
        return outcome

    def _refresh_parent(self, record: MigrationRecord) -> None:
        parent = self.repository.refresh_parent(record)
        if parent is not None and parent.status == MigrationStatus.SUCCEEDED:
            self.events.emit(EventType.COMPLETED, parent)

    def _handle_failure(self, record: MigrationRecord, conn: Connection, error: Exception) -> RunOutcome:
        try:
            conn.rollback()
        except Exception as rollback_error:
            logger.warning("rollback_failed", error=str(rollback_error))

        backtrace = self.config.backtrace_cleaner.clean(format_backtrace(error))
        self.repository.increment_attempts(
            record,
            error_class=error_class_name(error),
            error_message=str(error),
            backtrace=backtrace,
        )
        logger.warning(
            "migration_step_failed",
            error_class=record.error_class,
            error=record.error_message,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
        )

        outcome = RunOutcome.ERRORED
        if record.status in STOPPING_STATUSES:
            outcome = self._finalize_stop(record)
        elif record.attempts_exhausted:
            outcome = self._fail(record, error)

        if self.settings.run_inline:
            raise error
        return outcome

    def _fail(self, record: MigrationRecord, error: Exception) -> RunOutcome:
        try:
            self.repository.transition(record, MigrationStatus.FAILED, finished_at=self.config.clock())
        except StaleRecordError:
            return self._observe_stop_request(record) or RunOutcome.SKIPPED

        self.events.emit(EventType.FAILED, record, error_class=record.error_class)
        try:
            self.config.error_handler(error, record)
        except Exception as handler_error:
            logger.error("error_handler_failed", error=str(handler_error))
        self.repository.refresh_parent(record)
        return RunOutcome.FAILED


__all__ = ["StepRunner", "RunOutcome"]
