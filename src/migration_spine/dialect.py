"""SQL dialect abstraction for the migration engine.

The engine talks to two kinds of databases: the one holding the migration
records (and lock table), and the target databases the migrations run
against. Both are reached through a DB-API ``Connection`` plus a ``Dialect``
that produces the backend-specific SQL fragments: placeholders, identifier
quoting, statement and lock timeouts, index introspection and advisory locks.

Examples:
    >>> from migration_spine.dialect import SQLiteDialect, get_dialect
    >>> d = SQLiteDialect()
    >>> d.placeholders(3)
    '?, ?, ?'
    >>> get_dialect("postgresql").quote_identifier("users")
    '"users"'
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a SQL fragment (or full statement) valid for the
    target database, or ``None`` where the backend has no equivalent.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    @property
    def supports_advisory_locks(self) -> bool:
        """Whether session-level advisory locks are available."""
        ...

    # -- Placeholders ------------------------------------------------------

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list."""
        ...

    # -- Identifiers and DML -----------------------------------------------

    def quote_identifier(self, name: str) -> str:
        """Quote a table or column name."""
        ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        """``INSERT ... ON CONFLICT DO NOTHING`` (or equivalent)."""
        ...

    # -- DDL -----------------------------------------------------------------

    def auto_increment(self) -> str:
        """Column type for an auto-incrementing integer primary key."""
        ...

    def create_index_sql(
        self,
        name: str,
        table: str,
        columns: list[str],
        *,
        unique: bool = False,
        where: str | None = None,
    ) -> str:
        """``CREATE INDEX`` statement suitable for a live table."""
        ...

    def drop_index_sql(self, name: str) -> str:
        """``DROP INDEX`` statement that tolerates a missing index."""
        ...

    def validate_constraint_sql(self, table: str, name: str) -> str | None:
        """Statement validating a ``NOT VALID`` constraint, if supported."""
        ...

    # -- Introspection -----------------------------------------------------

    def table_exists_query(self) -> str:
        """Query returning a row when the table (one placeholder) exists."""
        ...

    def index_validity_query(self) -> str:
        """Query with (table, index) placeholders returning ``(valid,)``.

        No row means the index does not exist.
        """
        ...

    # -- Timeouts ------------------------------------------------------------

    def show_statement_timeout_sql(self) -> str | None:
        ...

    def set_statement_timeout_sql(self, value: Any) -> str | None:
        """``value`` is milliseconds, or a value previously read back."""
        ...

    def show_lock_timeout_sql(self) -> str | None:
        ...

    def set_lock_timeout_sql(self, value: Any) -> str | None:
        ...

    def is_lock_timeout_error(self, error: BaseException) -> bool:
        """Whether ``error`` means a lock could not be obtained in time."""
        ...

    # -- Advisory locks ------------------------------------------------------

    def try_advisory_lock_sql(self) -> str | None:
        ...

    def advisory_unlock_sql(self) -> str | None:
        ...


def _quote_double(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _index_columns(columns: list[str]) -> str:
    return ", ".join(_quote_double(c) for c in columns)


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, table-backed locks, no timeouts."""

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def supports_advisory_locks(self) -> bool:
        return False

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def quote_identifier(self, name: str) -> str:
        return _quote_double(name)

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"

    def auto_increment(self) -> str:
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    def create_index_sql(self, name, table, columns, *, unique=False, where=None) -> str:
        sql = (
            f"CREATE {'UNIQUE ' if unique else ''}INDEX {_quote_double(name)} "
            f"ON {_quote_double(table)} ({_index_columns(columns)})"
        )
        if where:
            sql += f" WHERE {where}"
        return sql

    def drop_index_sql(self, name: str) -> str:
        return f"DROP INDEX IF EXISTS {_quote_double(name)}"

    def validate_constraint_sql(self, table: str, name: str) -> str | None:
        return None

    def table_exists_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='table' AND name = ?"

    def index_validity_query(self) -> str:
        # SQLite builds indexes atomically, an existing index is always valid.
        return (
            "SELECT 1 FROM sqlite_master "
            "WHERE type='index' AND tbl_name = ? AND name = ?"
        )

    def show_statement_timeout_sql(self) -> str | None:
        return None

    def set_statement_timeout_sql(self, value: Any) -> str | None:
        return None

    def show_lock_timeout_sql(self) -> str | None:
        return None

    def set_lock_timeout_sql(self, value: Any) -> str | None:
        return None

    def is_lock_timeout_error(self, error: BaseException) -> bool:
        message = str(error).lower()
        return "database is locked" in message or "database table is locked" in message

    def try_advisory_lock_sql(self) -> str | None:
        return None

    def advisory_unlock_sql(self) -> str | None:
        return None


class PostgreSQLDialect:
    """PostgreSQL dialect: ``%s`` placeholders (psycopg), concurrent index builds.

    Timeout values are sent as text (``'1500ms'``) so a value read back with
    ``SHOW`` can be restored unchanged.
    """

    LOCK_NOT_AVAILABLE = "55P03"

    @property
    def name(self) -> str:
        return "postgresql"

    @property
    def supports_advisory_locks(self) -> bool:
        return True

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def quote_identifier(self, name: str) -> str:
        return _quote_double(name)

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"

    def auto_increment(self) -> str:
        return "BIGSERIAL PRIMARY KEY"

    def create_index_sql(self, name, table, columns, *, unique=False, where=None) -> str:
        sql = (
            f"CREATE {'UNIQUE ' if unique else ''}INDEX CONCURRENTLY {_quote_double(name)} "
            f"ON {_quote_double(table)} ({_index_columns(columns)})"
        )
        if where:
            sql += f" WHERE {where}"
        return sql

    def drop_index_sql(self, name: str) -> str:
        return f"DROP INDEX CONCURRENTLY IF EXISTS {_quote_double(name)}"

    def validate_constraint_sql(self, table: str, name: str) -> str | None:
        return f"ALTER TABLE {_quote_double(table)} VALIDATE CONSTRAINT {_quote_double(name)}"

    def table_exists_query(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = %s"
        )

    def index_validity_query(self) -> str:
        return (
            "SELECT i.indisvalid FROM pg_index i "
            "JOIN pg_class c ON c.oid = i.indexrelid "
            "JOIN pg_class t ON t.oid = i.indrelid "
            "WHERE t.relname = %s AND c.relname = %s"
        )

    def show_statement_timeout_sql(self) -> str | None:
        return "SHOW statement_timeout"

    def set_statement_timeout_sql(self, value: Any) -> str | None:
        return f"SET statement_timeout TO {_timeout_literal(value)}"

    def show_lock_timeout_sql(self) -> str | None:
        return "SHOW lock_timeout"

    def set_lock_timeout_sql(self, value: Any) -> str | None:
        return f"SET lock_timeout TO {_timeout_literal(value)}"

    def is_lock_timeout_error(self, error: BaseException) -> bool:
        code = getattr(error, "sqlstate", None) or getattr(error, "pgcode", None)
        if code == self.LOCK_NOT_AVAILABLE:
            return True
        return "lock timeout" in str(error).lower()

    def try_advisory_lock_sql(self) -> str | None:
        return "SELECT pg_try_advisory_lock(%s)"

    def advisory_unlock_sql(self) -> str | None:
        return "SELECT pg_advisory_unlock(%s)"


def _timeout_literal(value: Any) -> str:
    if isinstance(value, (int, float)):
        value = f"{int(value)}ms"
    return "'" + str(value).replace("'", "''") + "'"


_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]
