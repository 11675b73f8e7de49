"""Built-in data migrations.

Each is a keyset row range over the table's primary key that applies one
set-based statement per range. Constructor arguments are JSON-serializable
so they can be stored on the migration record.
"""

from __future__ import annotations

import re
from typing import Any

from migration_spine.batching import KeysetRowRange, MigrationContext
from migration_spine.dialect import Dialect
from migration_spine.models import utc_now

_FUNCTION_NAME = re.compile(r"\A\w+\Z")


def _assignments(dialect: Dialect, updates: dict[str, Any]) -> tuple[str, tuple]:
    sql = ", ".join(
        f"{dialect.quote_identifier(column)} = {dialect.placeholder(i)}"
        for i, column in enumerate(updates)
    )
    return sql, tuple(updates.values())


def _equalities(dialect: Dialect, table: str, conditions: dict[str, Any]) -> tuple[str | None, tuple]:
    clauses, params = [], []
    for column, value in conditions.items():
        ref = f"{dialect.quote_identifier(table)}.{dialect.quote_identifier(column)}"
        if value is None:
            clauses.append(f"{ref} IS NULL")
        else:
            clauses.append(f"{ref} = {dialect.placeholder(len(params))}")
            params.append(value)
    return (" AND ".join(clauses) or None), tuple(params)


class BackfillColumn(KeysetRowRange):
    """Sets columns to constant values on rows that do not have them yet."""

    def __init__(self, table_name: str, updates: dict[str, Any], key: str = "id") -> None:
        if not updates:
            raise ValueError("updates must not be empty")
        super().__init__(table_name, key)
        self.updates = dict(updates)

    def condition(self, dialect: Dialect) -> tuple[str | None, tuple]:
        clauses, params = [], []
        for column, value in self.updates.items():
            ref = self._column(dialect, column)
            if value is None:
                clauses.append(f"{ref} IS NOT NULL")
            else:
                clauses.append(f"({ref} IS NULL OR {ref} <> {dialect.placeholder(len(params))})")
                params.append(value)
        return " OR ".join(clauses), tuple(params)

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        assignments, values = _assignments(context.dialect, self.updates)
        context.conn.execute(
            f"UPDATE {self._table(context.dialect)} SET {assignments} WHERE {range_sql}",
            values + params,
        )


class CopyColumn(KeysetRowRange):
    """Copies ``copy_from`` columns into ``copy_to`` columns, optionally through a SQL function."""

    def __init__(
        self,
        table_name: str,
        copy_from: str | list[str],
        copy_to: str | list[str],
        type_cast_functions: dict[str, str] | None = None,
        key: str = "id",
    ) -> None:
        super().__init__(table_name, key)
        self.copy_from = [copy_from] if isinstance(copy_from, str) else list(copy_from)
        self.copy_to = [copy_to] if isinstance(copy_to, str) else list(copy_to)
        if len(self.copy_from) != len(self.copy_to):
            raise ValueError("Number of source and destination columns must match")
        self.type_cast_functions = dict(type_cast_functions or {})

    def _source(self, dialect: Dialect, column: str) -> str:
        ref = self._column(dialect, column)
        function = self.type_cast_functions.get(column)
        if function is None:
            return ref
        if _FUNCTION_NAME.match(function):
            return f"{function}({ref})"
        return function

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        dialect = context.dialect
        assignments = ", ".join(
            f"{dialect.quote_identifier(to)} = {self._source(dialect, source)}"
            for source, to in zip(self.copy_from, self.copy_to)
        )
        context.conn.execute(
            f"UPDATE {self._table(dialect)} SET {assignments} WHERE {range_sql}", params
        )


class DeleteOrphanedRecords(KeysetRowRange):
    """Deletes rows whose foreign key points at a missing parent row.

    ``associations`` is a list of ``[foreign_key, parent_table]`` or
    ``[foreign_key, parent_table, parent_key]``.
    """

    def __init__(self, table_name: str, associations: list[list[str]], key: str = "id") -> None:
        if not associations:
            raise ValueError("associations must not be empty")
        super().__init__(table_name, key)
        self.associations = [list(a) for a in associations]

    def condition(self, dialect: Dialect) -> tuple[str | None, tuple]:
        clauses = []
        for association in self.associations:
            foreign_key, parent_table = association[0], association[1]
            parent_key = association[2] if len(association) > 2 else "id"
            fk = self._column(dialect, foreign_key)
            parent = dialect.quote_identifier(parent_table)
            clauses.append(
                f"({fk} IS NOT NULL AND NOT EXISTS (SELECT 1 FROM {parent} "
                f"WHERE {parent}.{dialect.quote_identifier(parent_key)} = {fk}))"
            )
        return " OR ".join(clauses), ()

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        context.conn.execute(f"DELETE FROM {self._table(context.dialect)} WHERE {range_sql}", params)


class DeleteAssociatedRecords(KeysetRowRange):
    """Deletes the rows belonging to one parent row."""

    def __init__(self, table_name: str, foreign_key: str, parent_id: Any, key: str = "id") -> None:
        super().__init__(table_name, key)
        self.foreign_key = foreign_key
        self.parent_id = parent_id

    def condition(self, dialect: Dialect) -> tuple[str | None, tuple]:
        return _equalities(dialect, self.table_name, {self.foreign_key: self.parent_id})

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        context.conn.execute(f"DELETE FROM {self._table(context.dialect)} WHERE {range_sql}", params)


class PerformActionOnRelation(KeysetRowRange):
    """Updates or deletes the rows matching ``conditions``."""

    ACTIONS = ("update", "delete")

    def __init__(
        self,
        table_name: str,
        conditions: dict[str, Any] | None,
        action: str,
        updates: dict[str, Any] | None = None,
        key: str = "id",
    ) -> None:
        if action not in self.ACTIONS:
            raise ValueError(f"action must be one of {self.ACTIONS}, got {action!r}")
        if action == "update" and not updates:
            raise ValueError("updates are required for the update action")
        super().__init__(table_name, key)
        self.conditions = dict(conditions or {})
        self.action = action
        self.updates = dict(updates or {})

    def condition(self, dialect: Dialect) -> tuple[str | None, tuple]:
        return _equalities(dialect, self.table_name, self.conditions)

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        table = self._table(context.dialect)
        if self.action == "delete":
            context.conn.execute(f"DELETE FROM {table} WHERE {range_sql}", params)
            return
        assignments, values = _assignments(context.dialect, self.updates)
        context.conn.execute(f"UPDATE {table} SET {assignments} WHERE {range_sql}", values + params)


class ResetCounters(KeysetRowRange):
    """Recomputes counter cache columns from the child tables.

    ``counters`` maps a counter column to ``[child_table, foreign_key]``.
    ``touch`` names timestamp columns set to the current time.
    """

    def __init__(
        self,
        table_name: str,
        counters: dict[str, list[str]],
        touch: list[str] | None = None,
        key: str = "id",
    ) -> None:
        if not counters:
            raise ValueError("counters must not be empty")
        super().__init__(table_name, key)
        self.counters = {column: list(target) for column, target in counters.items()}
        self.touch = list(touch or [])

    def apply(self, context: MigrationContext, range_sql: str, params: tuple) -> None:
        dialect = context.dialect
        key = self._column(dialect, self.key)
        assignments = []
        for column, (child_table, foreign_key) in self.counters.items():
            child = dialect.quote_identifier(child_table)
            assignments.append(
                f"{dialect.quote_identifier(column)} = (SELECT COUNT(*) FROM {child} "
                f"WHERE {child}.{dialect.quote_identifier(foreign_key)} = {key})"
            )
        touch_values: tuple = ()
        if self.touch:
            now = utc_now().isoformat()
            assignments.extend(
                f"{dialect.quote_identifier(column)} = {dialect.placeholder(0)}" for column in self.touch
            )
            touch_values = tuple(now for _ in self.touch)
        context.conn.execute(
            f"UPDATE {self._table(dialect)} SET {', '.join(assignments)} WHERE {range_sql}",
            touch_values + params,
        )


BUILTINS = {
    "BackfillColumn": BackfillColumn,
    "CopyColumn": CopyColumn,
    "DeleteOrphanedRecords": DeleteOrphanedRecords,
    "DeleteAssociatedRecords": DeleteAssociatedRecords,
    "PerformActionOnRelation": PerformActionOnRelation,
    "ResetCounters": ResetCounters,
}

__all__ = [
    "BackfillColumn",
    "CopyColumn",
    "DeleteOrphanedRecords",
    "DeleteAssociatedRecords",
    "PerformActionOnRelation",
    "ResetCounters",
    "BUILTINS",
]
