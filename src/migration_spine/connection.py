"""Database connections and the shard registry.

``connect(url)`` opens one connection and picks its dialect. The
``ConnectionRegistry`` maps a ``(connection_class_name, shard)`` pair, as
stored on a migration record, to the connection a step must run on, and
lists the shards of a connection class so enqueue can fan sharded work out
into a composite record.

Usage::

    from migration_spine.connection import ConnectionRegistry, SqliteConnection

    registry = ConnectionRegistry.single(SqliteConnection("app.db"))

    sharded = ConnectionRegistry()
    sharded.register(None, "shard_one", lambda: SqliteConnection("one.db"))
    sharded.register(None, "shard_two", lambda: SqliteConnection("two.db"))
    sharded.shard_names(None)   # ['shard_one', 'shard_two']
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from migration_spine.dialect import Dialect, PostgreSQLDialect, SQLiteDialect
from migration_spine.errors import ConfigError
from migration_spine.protocols import Connection

logger = logging.getLogger(__name__)

PRIMARY = "primary"


class SqliteConnection:
    """Adapter: ``sqlite3.Connection`` → ``Connection`` protocol.

    Keeps one cursor so ``fetchone``/``fetchall`` also work at connection
    level.
    """

    def __init__(self, path: str = ":memory:", *, row_factory: Any = None) -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        if row_factory is not None:
            self._conn.row_factory = row_factory
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._cursor = self._conn.cursor()

    def execute(self, sql: str, params: tuple = ()) -> Any:
        self._cursor.execute(sql, params)
        return self._cursor

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        self._cursor.executemany(sql, params)
        return self._cursor

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        return self._cursor.fetchall()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self._conn!r})"


class PostgresConnection:
    """Adapter: psycopg2 connection → ``Connection`` protocol.

    psycopg2 is an optional dependency (``pip install migration-spine[postgres]``).
    """

    def __init__(self, dsn: str, *, autocommit: bool = True) -> None:
        try:
            import psycopg2
        except ImportError:
            raise ImportError(
                "psycopg2 is required for PostgreSQL. "
                "Install with: pip install migration-spine[postgres]"
            ) from None

        self._conn = psycopg2.connect(dsn)
        # CREATE INDEX CONCURRENTLY cannot run inside a transaction block.
        self._conn.autocommit = autocommit
        self._cursor = self._conn.cursor()

    def execute(self, sql: str, params: tuple = ()) -> Any:
        self._cursor.execute(sql, params or None)
        return self._cursor

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        self._cursor.executemany(sql, params)
        return self._cursor

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        return self._cursor.fetchall()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    @property
    def raw(self) -> Any:
        return self._conn


def dialect_for(conn: Any) -> Dialect:
    """Pick a dialect for an open connection."""
    if isinstance(conn, (SqliteConnection, sqlite3.Connection)):
        return SQLiteDialect()
    if isinstance(conn, PostgresConnection):
        return PostgreSQLDialect()
    module = type(conn).__module__
    if module.startswith(("psycopg", "asyncpg", "pg8000")):
        return PostgreSQLDialect()
    return SQLiteDialect()


def connect(url: str | None, *, autocommit: bool = True) -> tuple[Connection, Dialect]:
    """Open a connection from a URL, file path or ``":memory:"``.

    - ``None`` / ``":memory:"`` / ``"sqlite://"``: in-memory SQLite
    - ``"sqlite:///path.db"`` or a bare path: file SQLite
    - ``"postgresql://..."``: PostgreSQL via psycopg2, in autocommit mode
      unless ``autocommit=False``
    """
    if not url or url in (":memory:", "memory", "sqlite://", "sqlite:///:memory:"):
        return SqliteConnection(":memory:"), SQLiteDialect()
    if url.startswith("sqlite:///"):
        return SqliteConnection(url[len("sqlite:///"):]), SQLiteDialect()
    if url.startswith(("postgresql://", "postgres://")):
        return PostgresConnection(url, autocommit=autocommit), PostgreSQLDialect()
    if "://" in url:
        raise ConfigError(f"Unsupported database URL scheme: {url.split('://', 1)[0]!r}")
    return SqliteConnection(url), SQLiteDialect()


@dataclass
class _Entry:
    factory: Callable[[], Any]
    dialect: Dialect | None
    conn: Any = None


class ConnectionRegistry:
    """Resolves ``(connection_class_name, shard)`` to a live connection.

    ``None`` as connection class name means the primary database. A
    connection class with a single entry registered under shard ``None`` is
    unsharded. Connections are opened lazily and cached.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str | None, _Entry]] = {}

    @classmethod
    def single(cls, conn: Any, dialect: Dialect | None = None) -> ConnectionRegistry:
        """Registry whose primary, unsharded connection is ``conn``."""
        registry = cls()
        registry.register(None, None, lambda: conn, dialect=dialect)
        return registry

    def register(
        self,
        connection_class_name: str | None,
        shard: str | None,
        factory: Callable[[], Any],
        *,
        dialect: Dialect | None = None,
    ) -> None:
        name = connection_class_name or PRIMARY
        self._entries.setdefault(name, {})[shard] = _Entry(factory=factory, dialect=dialect)

    def shard_names(self, connection_class_name: str | None = None) -> list[str | None]:
        """Shards of a connection class in registration order.

        Returns ``[None]`` for an unsharded connection class.
        """
        entries = self._entries.get(connection_class_name or PRIMARY)
        if not entries:
            raise ConfigError(
                f"No connection registered for {connection_class_name or PRIMARY!r}"
            )
        shards = list(entries)
        if len(shards) > 1 and None in shards:
            shards.remove(None)
        return shards

    def is_sharded(self, connection_class_name: str | None = None) -> bool:
        return self.shard_names(connection_class_name) != [None]

    def get(self, connection_class_name: str | None = None, shard: str | None = None) -> tuple[Connection, Dialect]:
        """Open (or reuse) the connection for a record's target."""
        name = connection_class_name or PRIMARY
        entries = self._entries.get(name, {})
        entry = entries.get(shard)
        if entry is None and shard is None and len(entries) == 1:
            entry = next(iter(entries.values()))
        if entry is None:
            raise ConfigError(f"No connection registered for {name!r} shard {shard!r}")
        if entry.conn is None:
            entry.conn = entry.factory()
            logger.debug(f"Opened connection {name}/{shard}")
        if entry.dialect is None:
            entry.dialect = dialect_for(entry.conn)
        return entry.conn, entry.dialect

    def primary(self) -> tuple[Connection, Dialect]:
        """Connection holding the migration records and lock table.

        For a sharded primary this is the first shard.
        """
        return self.get(None, self.shard_names(None)[0])


__all__ = [
    "SqliteConnection",
    "PostgresConnection",
    "ConnectionRegistry",
    "connect",
    "dialect_for",
]
