"""
Batch/Cursor engine: turns a dataset into bounded, resumable work units.

A data migration exposes one of two capabilities:

- **IterableCollection**: ``iterate(context, cursor)`` lazily yields
  ``(item, cursor_after_item)`` pairs starting after ``cursor``, and
  ``process(context, item)`` handles one item. The cursor is any
  JSON-serializable value: an index, a primary key, an ordering key, an API
  page token.
- **RowRange**: ``next_range(context, cursor, batch_size)`` is a keyset
  boundary query returning the next :class:`RowRangeBounds` after the last
  processed key, and ``process_range(context, bounds)`` handles the whole
  range with set-based SQL.

Both may expose ``count(context)`` as a size hint for progress.

:class:`BatchCursor` derives the next :class:`WorkUnit` from the persisted
cursor alone, so a worker that resumes after a crash produces exactly the
units an uninterrupted run would have produced from that cursor. Processing
must be idempotent: a unit can run again if the process died after applying
it but before its cursor was saved.

Example:
    >>> collection = ListCollection(["a", "b", "c"], processor=print)
    >>> batches = BatchCursor(collection, context, batch_size=2)
    >>> [unit.payload for unit in batches.units(None)]
    [('a', 'b'), ('c',)]
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from itertools import islice
from typing import Any, Protocol, runtime_checkable

from migration_spine.dialect import Dialect
from migration_spine.errors import ExecutionError
from migration_spine.models import DataMigrationRecord
from migration_spine.protocols import Connection


@dataclass(frozen=True)
class MigrationContext:
    """What a data migration's hooks are given for one step."""

    conn: Connection
    dialect: Dialect
    record: DataMigrationRecord

    @property
    def shard(self) -> str | None:
        return self.record.shard


@dataclass(frozen=True)
class RowRangeBounds:
    """Inclusive key range ``[start, stop]`` holding ``count`` rows."""

    start: Any
    stop: Any
    count: int


@runtime_checkable
class IterableCollection(Protocol):
    def iterate(self, context: MigrationContext, cursor: Any) -> Iterator[tuple[Any, Any]]: ...

    def process(self, context: MigrationContext, item: Any) -> None: ...


@runtime_checkable
class RowRange(Protocol):
    def next_range(
        self, context: MigrationContext, cursor: Any, batch_size: int
    ) -> RowRangeBounds | None: ...

    def process_range(self, context: MigrationContext, bounds: RowRangeBounds) -> None: ...


@dataclass(frozen=True)
class WorkUnit:
    """One bounded step of a data migration."""

    payload: tuple[Any, ...] | RowRangeBounds
    cursor_before: Any
    cursor_after: Any
    ticks: int


class BatchCursor:
    """Produces and executes work units for one capability."""

    def __init__(self, capability: Any, context: MigrationContext, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if isinstance(capability, RowRange):
            self._row_range = True
        elif isinstance(capability, IterableCollection):
            self._row_range = False
        else:
            raise ExecutionError(
                f"{type(capability).__name__} implements neither "
                "iterate/process nor next_range/process_range"
            )
        self.capability = capability
        self.context = context
        self.batch_size = batch_size

    def next_unit(self, cursor: Any) -> WorkUnit | None:
        """The unit following ``cursor``, or None when the dataset is exhausted."""
        if self._row_range:
            bounds = self.capability.next_range(self.context, cursor, self.batch_size)
            if bounds is None or bounds.count == 0:
                return None
            return WorkUnit(bounds, cursor, bounds.stop, bounds.count)

        items: list[Any] = []
        cursor_after = cursor
        for item, item_cursor in islice(self.capability.iterate(self.context, cursor), self.batch_size):
            items.append(item)
            cursor_after = item_cursor
        if not items:
            return None
        return WorkUnit(tuple(items), cursor, cursor_after, len(items))

    def units(self, cursor: Any = None) -> Iterator[WorkUnit]:
        """Lazily walk every remaining unit starting after ``cursor``."""
        while (unit := self.next_unit(cursor)) is not None:
            yield unit
            cursor = unit.cursor_after

    def execute(self, unit: WorkUnit) -> None:
        if self._row_range:
            self.capability.process_range(self.context, unit.payload)
        else:
            for item in unit.payload:
                self.capability.process(self.context, item)

    def count(self) -> int | None:
        count = getattr(self.capability, "count", None)
        if count is None:
            return None
        return count(self.context)


class ListCollection:
    """Iterable collection over an in-memory sequence; the cursor is the next index."""

    def __init__(self, items: Sequence[Any], processor: Callable[[Any], Any]) -> None:
        self.items = items
        self.processor = processor

    def iterate(self, context: MigrationContext, cursor: Any) -> Iterator[tuple[Any, Any]]:
        start = cursor or 0
        for index in range(start, len(self.items)):
            yield self.items[index], index + 1

    def process(self, context: MigrationContext, item: Any) -> None:
        self.processor(item)

    def count(self, context: MigrationContext) -> int:
        return len(self.items)


class KeysetRowRange:
    """Row range over ``table`` ordered by the unique ``key`` column.

    The cursor is the last processed key. Subclasses narrow the rows with
    :meth:`condition` and apply their change in :meth:`apply`; both receive
    the dialect so placeholders and quoting match the target database.
    """

    def __init__(self, table_name: str, key: str = "id") -> None:
        self.table_name = table_name
        self.key = key

    def condition(self, dialect: Dialect) -> tuple[str | None, tuple]:
        """Extra ``WHERE`` fragment selecting the rows to migrate."""
        return None, ()

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        raise NotImplementedError

    def _table(self, dialect: Dialect) -> str:
        return dialect.quote_identifier(self.table_name)

    def _column(self, dialect: Dialect, column: str) -> str:
        return f"{self._table(dialect)}.{dialect.quote_identifier(column)}"

    def next_range(self, context: MigrationContext, cursor: Any, batch_size: int) -> RowRangeBounds | None:
        dialect = context.dialect
        key = self._column(dialect, self.key)
        clauses, params = [], []
        if cursor is not None:
            clauses.append(f"{key} > {dialect.placeholder(0)}")
            params.append(cursor)
        condition, condition_params = self.condition(dialect)
        if condition:
            clauses.append(f"({condition})")
            params.extend(condition_params)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = context.conn.execute(
            f"SELECT {key} FROM {self._table(dialect)}{where} ORDER BY {key} LIMIT {int(batch_size)}",
            tuple(params),
        ).fetchall()
        if not rows:
            return None
        return RowRangeBounds(start=rows[0][0], stop=rows[-1][0], count=len(rows))

    def process_range(self, context: MigrationContext, bounds: RowRangeBounds) -> None:
        dialect = context.dialect
        key = self._column(dialect, self.key)
        range_sql = f"{key} BETWEEN {dialect.placeholder(0)} AND {dialect.placeholder(1)}"
        params: tuple = (bounds.start, bounds.stop)
        condition, condition_params = self.condition(dialect)
        if condition:
            range_sql = f"{range_sql} AND ({condition})"
            params += tuple(condition_params)
        self.apply(context, range_sql, params)

    def count(self, context: MigrationContext) -> int:
        dialect = context.dialect
        condition, params = self.condition(dialect)
        where = f" WHERE {condition}" if condition else ""
        row = context.conn.execute(
            f"SELECT COUNT(*) FROM {self._table(dialect)}{where}", tuple(params)
        ).fetchone()
        return int(row[0])


__all__ = [
    "MigrationContext",
    "RowRangeBounds",
    "IterableCollection",
    "RowRange",
    "WorkUnit",
    "BatchCursor",
    "ListCollection",
    "KeysetRowRange",
]
