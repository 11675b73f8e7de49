"""
Persistence for migration records.

The repository is the only code that writes the migration tables. Status
changes are compare-and-set: ``UPDATE ... WHERE id = ? AND status = ?``.
When another worker (or an operator pausing the migration) changed the row
first, the update matches nothing and :class:`StaleRecordError` is raised,
so two workers can never both move the same record out of one status.

Composite parents are kept consistent with their children here:
``refresh_parent`` re-derives a parent's status after any child transition,
and ``retry``/``pause``/``resume``/``cancel`` on a parent are delegated to
its children.

Example:
    >>> repo = MigrationRepository(conn)
    >>> record = repo.insert(SchemaMigrationRecord(
    ...     migration_name="index_users_on_email",
    ...     table_name="users",
    ...     definition="CREATE INDEX index_users_on_email ON users (email)",
    ... ))
    >>> repo.claim(record).status
    <MigrationStatus.RUNNING: 'running'>
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

from migration_spine.dialect import Dialect, SQLiteDialect
from migration_spine.errors import (
    DuplicateMigrationError,
    InvalidTransitionError,
    MigrationNotFoundError,
    StaleRecordError,
    ValidationError,
)
from migration_spine.logging import get_logger
from migration_spine.models import (
    RECORD_TYPES,
    MigrationKind,
    MigrationRecord,
    MigrationStatus,
    aggregate_status,
    composite_progress,
    utc_now,
    validate_composite_status,
    validate_transition,
)
from migration_spine.protocols import Connection
from migration_spine.schema import TABLES

logger = get_logger(__name__)

_COMMON_COLUMNS = [
    "migration_name",
    "arguments",
    "shard",
    "status",
    "composite",
    "parent_id",
    "connection_class_name",
    "attempts",
    "max_attempts",
    "started_at",
    "finished_at",
    "error_class",
    "error_message",
    "backtrace",
    "created_at",
    "updated_at",
]

COLUMNS: dict[MigrationKind, list[str]] = {
    MigrationKind.DATA: _COMMON_COLUMNS
    + ["cursor", "tick_count", "tick_total", "time_running", "iteration_pause"],
    MigrationKind.SCHEMA: _COMMON_COLUMNS + ["table_name", "definition", "statement_timeout"],
}

_TABLE_NAMES = {
    MigrationKind.DATA: TABLES["data_migrations"],
    MigrationKind.SCHEMA: TABLES["schema_migrations"],
}

_JSON_COLUMNS = {"arguments", "cursor", "backtrace"}
_TIME_COLUMNS = {"started_at", "finished_at", "created_at", "updated_at"}

# Fields reset by retry, per kind.
_RETRY_RESET: dict[MigrationKind, dict[str, Any]] = {
    MigrationKind.DATA: {"cursor": None, "tick_count": 0, "time_running": 0.0},
    MigrationKind.SCHEMA: {},
}

_CLEARED_ERROR = {"error_class": None, "error_message": None, "backtrace": None}


def canonical_arguments(arguments: Any) -> str:
    """JSON text stored in (and compared against) the ``arguments`` column."""
    return json.dumps(list(arguments or []), sort_keys=True, separators=(",", ":"), default=str)


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column == "arguments":
        return canonical_arguments(value)
    if column in _JSON_COLUMNS:
        return json.dumps(value, default=str)
    if column in _TIME_COLUMNS:
        return value.isoformat()
    if column == "status":
        return MigrationStatus(value).value
    if column == "composite":
        return 1 if value else 0
    return value


def _from_db(column: str, value: Any) -> Any:
    if value is None:
        return [] if column == "arguments" else None
    if column in _JSON_COLUMNS:
        return json.loads(value)
    if column in _TIME_COLUMNS:
        return datetime.fromisoformat(value)
    if column == "status":
        return MigrationStatus(value)
    if column == "composite":
        return bool(value)
    return value


def _is_unique_violation(error: Exception) -> bool:
    name = type(error).__name__
    if name == "UniqueViolation":
        return True
    return name == "IntegrityError" and "unique" in str(error).lower()


class MigrationRepository:
    """Reads and writes migration records of both kinds."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.dialect = dialect or SQLiteDialect()
        self.clock = clock

    # -- SQL helpers ---------------------------------------------------------

    def _ph(self, index: int = 0) -> str:
        return self.dialect.placeholder(index)

    def _select(self, kind: MigrationKind) -> str:
        return f"SELECT id, {', '.join(COLUMNS[kind])} FROM {_TABLE_NAMES[kind]}"

    def _row_to_record(self, kind: MigrationKind, row: Any) -> MigrationRecord:
        values = {"id": row[0]}
        for index, column in enumerate(COLUMNS[kind], start=1):
            values[column] = _from_db(column, row[index])
        return RECORD_TYPES[kind](**values)

    def _query(self, kind: MigrationKind, where: str = "", params: tuple = ()) -> list[MigrationRecord]:
        sql = self._select(kind)
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY id"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_record(kind, row) for row in rows]

    # -- Reads -------------------------------------------------------------------

    def find_by_id(self, kind: MigrationKind, record_id: int) -> MigrationRecord | None:
        records = self._query(kind, f"id = {self._ph()}", (record_id,))
        return records[0] if records else None

    def get(self, kind: MigrationKind, record_id: int) -> MigrationRecord:
        record = self.find_by_id(kind, record_id)
        if record is None:
            raise MigrationNotFoundError(f"{kind.value} migration {record_id} not found").with_context(
                migration_id=record_id, kind=kind.value
            )
        return record

    def reload(self, record: MigrationRecord) -> MigrationRecord:
        return self.get(record.kind, record.id)

    def find(
        self,
        kind: MigrationKind,
        migration_name: str,
        arguments: list[Any] | None = None,
        shard: str | None = None,
    ) -> MigrationRecord | None:
        """Look a record up by its identity (name, arguments, shard)."""
        where = f"migration_name = {self._ph(0)} AND arguments = {self._ph(1)}"
        params: tuple = (migration_name, canonical_arguments(arguments))
        if shard is None:
            where += " AND shard IS NULL"
        else:
            where += f" AND shard = {self._ph(2)}"
            params += (shard,)
        records = self._query(kind, where, params)
        return records[0] if records else None

    def list(
        self,
        kind: MigrationKind,
        *,
        statuses: list[MigrationStatus] | None = None,
        shard: str | None = None,
        top_level: bool = False,
        parent_id: int | None = None,
    ) -> list[MigrationRecord]:
        clauses, params = [], []
        if statuses:
            clauses.append(f"status IN ({self.dialect.placeholders(len(statuses))})")
            params.extend(MigrationStatus(s).value for s in statuses)
        if shard is not None:
            clauses.append(f"shard = {self._ph()}")
            params.append(shard)
        if top_level:
            clauses.append("parent_id IS NULL")
        if parent_id is not None:
            clauses.append(f"parent_id = {self._ph()}")
            params.append(parent_id)
        return self._query(kind, " AND ".join(clauses), tuple(params))

    def children(self, parent: MigrationRecord) -> list[MigrationRecord]:
        if not parent.composite:
            return []
        return self.list(parent.kind, parent_id=parent.id)

    def parent_of(self, record: MigrationRecord) -> MigrationRecord | None:
        if record.parent_id is None:
            return None
        return self.get(record.kind, record.parent_id)

    def progress(self, record: MigrationRecord) -> float | None:
        """Progress percentage; composite records average their children."""
        if record.composite:
            if record.status == MigrationStatus.SUCCEEDED:
                return 100.0
            return composite_progress(self.children(record))
        return record.progress

    # -- Writes ------------------------------------------------------------------

    def insert(self, record: MigrationRecord) -> MigrationRecord:
        """Persist a new record.

        Raises:
            DuplicateMigrationError: A record with the same identity exists.
            ValidationError: The record would nest deeper than one level.
        """
        if record.id is not None:
            raise ValidationError("record is already persisted")
        if record.parent_id is not None:
            parent = self.get(record.kind, record.parent_id)
            if not parent.composite or parent.parent_id is not None:
                raise ValidationError("a child migration's parent must be a top-level composite migration")

        if self.find(record.kind, record.migration_name, record.arguments, record.shard) is not None:
            raise DuplicateMigrationError(
                f"{record.kind.value} migration {record.migration_name!r} with the same "
                f"arguments already exists for shard {record.shard!r}"
            ).with_context(migration_name=record.migration_name, shard=record.shard)

        now = self.clock()
        record.created_at = now
        record.updated_at = now
        columns = COLUMNS[record.kind]
        values = tuple(_to_db(column, getattr(record, column)) for column in columns)
        sql = (
            f"INSERT INTO {_TABLE_NAMES[record.kind]} ({', '.join(columns)}) "
            f"VALUES ({self.dialect.placeholders(len(columns))})"
        )
        try:
            if self.dialect.name == "postgresql":
                record.id = self.conn.execute(sql + " RETURNING id", values).fetchone()[0]
            else:
                record.id = self.conn.execute(sql, values).lastrowid
            self.conn.commit()
        except Exception as e:
            if not _is_unique_violation(e):
                raise
            self.conn.rollback()
            raise DuplicateMigrationError(
                f"{record.kind.value} migration {record.migration_name!r} already exists",
                cause=e,
            ) from e
        logger.debug("migration_inserted", migration_id=record.id, kind=record.kind.value)
        return record

    def update(self, record: MigrationRecord, **changes: Any) -> MigrationRecord:
        """Write ``changes`` without touching the status."""
        changes["updated_at"] = self.clock()
        self._write(record, changes)
        for column, value in changes.items():
            setattr(record, column, value)
        return record

    def increment_attempts(self, record: MigrationRecord, **changes: Any) -> MigrationRecord:
        """Atomically add one to ``attempts`` and write ``changes``."""
        changes["updated_at"] = self.clock()
        assignments = ["attempts = attempts + 1"]
        params = []
        for column, value in changes.items():
            assignments.append(f"{column} = {self._ph()}")
            params.append(_to_db(column, value))
        self.conn.execute(
            f"UPDATE {_TABLE_NAMES[record.kind]} SET {', '.join(assignments)} WHERE id = {self._ph()}",
            tuple(params) + (record.id,),
        )
        self.conn.commit()
        fresh = self.reload(record)
        record.__dict__.update(fresh.__dict__)
        return record

    def _write(self, record: MigrationRecord, changes: dict[str, Any], expected: MigrationStatus | None = None) -> int:
        assignments = ", ".join(f"{column} = {self._ph()}" for column in changes)
        params = tuple(_to_db(column, value) for column, value in changes.items())
        sql = f"UPDATE {_TABLE_NAMES[record.kind]} SET {assignments} WHERE id = {self._ph()}"
        params += (record.id,)
        if expected is not None:
            sql += f" AND status = {self._ph()}"
            params += (expected.value,)
        rowcount = self.conn.execute(sql, params).rowcount
        self.conn.commit()
        return rowcount

    def transition(
        self,
        record: MigrationRecord,
        target: MigrationStatus,
        **changes: Any,
    ) -> MigrationRecord:
        """Move ``record`` to ``target`` if it is still in its current status.

        Raises:
            InvalidTransitionError: The state machine does not allow it.
            ValidationError: A composite parent would contradict its children.
            StaleRecordError: The stored status changed in the meantime.
        """
        current = record.status
        validate_transition(current, target, composite=record.composite)
        if record.composite:
            validate_composite_status(target, [child.status for child in self.children(record)])

        changes["status"] = target
        changes["updated_at"] = self.clock()
        if self._write(record, changes, expected=current) == 0:
            raise StaleRecordError(
                f"{record.kind.value} migration {record.id} is no longer {current.value}"
            ).with_context(migration_id=record.id, kind=record.kind.value)
        for column, value in changes.items():
            setattr(record, column, value)
        logger.debug(
            "migration_transitioned",
            migration_id=record.id,
            kind=record.kind.value,
            from_status=current.value,
            to_status=target.value,
        )
        return record

    def claim(self, record: MigrationRecord) -> MigrationRecord:
        """``enqueued → running``; a child also starts its enqueued parent."""
        changes: dict[str, Any] = {}
        if record.started_at is None:
            changes["started_at"] = self.clock()
        self.transition(record, MigrationStatus.RUNNING, **changes)
        parent = self.parent_of(record)
        if parent is not None and parent.status == MigrationStatus.ENQUEUED:
            try:
                self.transition(parent, MigrationStatus.RUNNING, started_at=parent.started_at or self.clock())
            except StaleRecordError:
                pass  # a sibling's claim started it
        return record

    def refresh_parent(self, child: MigrationRecord) -> MigrationRecord | None:
        """Re-derive the parent's status from its children.

        Returns the parent when its status changed.
        """
        parent = self.parent_of(child)
        if parent is None:
            return None
        return self._settle(parent)

    def _settle(self, parent: MigrationRecord) -> MigrationRecord | None:
        target = aggregate_status([c.status for c in self.children(parent)])
        if target == parent.status:
            return None

        changed = None
        if parent.status == MigrationStatus.ENQUEUED and target in (
            MigrationStatus.RUNNING,
            MigrationStatus.SUCCEEDED,
            MigrationStatus.FAILED,
        ):
            self.transition(parent, MigrationStatus.RUNNING, started_at=parent.started_at or self.clock())
            changed = parent
        if parent.status in (MigrationStatus.ENQUEUED, MigrationStatus.RUNNING) and target in (
            MigrationStatus.SUCCEEDED,
            MigrationStatus.FAILED,
            MigrationStatus.CANCELLED,
        ):
            self.transition(parent, target, finished_at=self.clock())
            changed = parent
        return changed

    # -- Operator actions ---------------------------------------------------

    def retry(self, record: MigrationRecord) -> MigrationRecord:
        """Return a failed record to ``enqueued`` with attempts, cursor and errors reset.

        On a composite every failed child is retried too.
        """
        if record.status != MigrationStatus.FAILED:
            raise InvalidTransitionError(record.status, MigrationStatus.ENQUEUED)

        if record.composite:
            for child in self.children(record):
                if child.status == MigrationStatus.FAILED:
                    self._reset(child)
            return self._reset(record, composite=True)

        self._reset(record)
        parent = self.parent_of(record)
        if parent is not None and parent.status == MigrationStatus.FAILED:
            statuses = [c.status for c in self.children(parent)]
            if MigrationStatus.FAILED not in statuses:
                self._reset(parent, composite=True)
        return record

    def _reset(self, record: MigrationRecord, composite: bool = False) -> MigrationRecord:
        changes: dict[str, Any] = {
            "attempts": 0,
            "started_at": None,
            "finished_at": None,
            **_CLEARED_ERROR,
            **_RETRY_RESET[record.kind],
        }
        if composite:
            # The children are no longer failed; skip the aggregate check.
            changes["status"] = MigrationStatus.ENQUEUED
            changes["updated_at"] = self.clock()
            if self._write(record, changes, expected=MigrationStatus.FAILED) == 0:
                raise StaleRecordError(f"{record.kind.value} migration {record.id} is no longer failed")
            for column, value in changes.items():
                setattr(record, column, value)
            return record
        return self.transition(record, MigrationStatus.ENQUEUED, **changes)

    def pause(self, record: MigrationRecord) -> int:
        """Request a pause. Returns the number of records asked to pause."""
        return self._request(record, MigrationStatus.RUNNING, MigrationStatus.PAUSING)

    def cancel(self, record: MigrationRecord) -> int:
        """Request cancellation. Returns the number of records cancelled or asked to cancel.

        An enqueued record has no step in flight and is cancelled at once. On a
        composite the running child is asked to stop, the enqueued children are
        cancelled and the parent settles once no child is left to run.
        """
        if not record.composite:
            self._cancel(record)
            self.refresh_parent(record)
            return 1
        count = 0
        for child in self.children(record):
            if child.status not in (MigrationStatus.ENQUEUED, MigrationStatus.RUNNING):
                continue
            try:
                self._cancel(child)
                count += 1
            except StaleRecordError:
                continue
        self._settle(self.reload(record))
        return count

    def _cancel(self, record: MigrationRecord) -> MigrationRecord:
        if record.status == MigrationStatus.ENQUEUED:
            return self.transition(record, MigrationStatus.CANCELLED, finished_at=self.clock())
        return self.transition(record, MigrationStatus.CANCELLING)

    def resume(self, record: MigrationRecord) -> int:
        """``paused → enqueued``; the Scheduler claims it again on its next pass."""
        return self._request(record, MigrationStatus.PAUSED, MigrationStatus.ENQUEUED)

    def _request(self, record: MigrationRecord, source: MigrationStatus, target: MigrationStatus) -> int:
        if not record.composite:
            self.transition(record, target)
            return 1
        count = 0
        for child in self.children(record):
            if child.status != source:
                continue
            try:
                self.transition(child, target)
                count += 1
            except StaleRecordError:
                continue
        return count


__all__ = ["MigrationRepository", "COLUMNS", "canonical_arguments"]
