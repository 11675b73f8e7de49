"""
Tables holding migration records and exclusivity locks.

One table per migration kind. Each has a unique index on
``(migration_name, arguments, COALESCE(shard, ''))`` so the same logical work
cannot be enqueued twice (``COALESCE`` because NULL shards never collide in
a plain unique index), and a self-referencing ``parent_id`` with cascading
delete so removing a composite parent removes its children.

Table Registry (TABLES):
    data_migrations   → background_data_migrations
    schema_migrations → background_schema_migrations
    locks             → migration_locks
"""

from __future__ import annotations

from migration_spine.dialect import Dialect, SQLiteDialect

TABLES = {
    "data_migrations": "background_data_migrations",
    "schema_migrations": "background_schema_migrations",
    "locks": "migration_locks",
}

_COMMON_COLUMNS = """
    migration_name TEXT NOT NULL,
    arguments TEXT NOT NULL DEFAULT '[]',
    shard TEXT,
    status TEXT NOT NULL DEFAULT 'enqueued',
    composite INTEGER NOT NULL DEFAULT 0,
    parent_id INTEGER REFERENCES {table}(id) ON DELETE CASCADE,
    connection_class_name TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    error_class TEXT,
    error_message TEXT,
    backtrace TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL"""


def build_ddl(dialect: Dialect) -> dict[str, str]:
    """DDL statements keyed by name, in creation order."""
    data_table = TABLES["data_migrations"]
    schema_table = TABLES["schema_migrations"]
    locks_table = TABLES["locks"]
    pk = dialect.auto_increment()

    return {
        data_table: f"""
            CREATE TABLE IF NOT EXISTS {data_table} (
                id {pk},{_COMMON_COLUMNS.format(table=data_table)},
                cursor TEXT,
                tick_count INTEGER NOT NULL DEFAULT 0,
                tick_total INTEGER,
                time_running REAL NOT NULL DEFAULT 0,
                iteration_pause REAL NOT NULL DEFAULT 0
            )
        """,
        f"{data_table}_unique": f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{data_table}_identity
            ON {data_table} (migration_name, arguments, COALESCE(shard, ''))
        """,
        f"{data_table}_status": f"""
            CREATE INDEX IF NOT EXISTS idx_{data_table}_status
            ON {data_table} (status, parent_id)
        """,
        schema_table: f"""
            CREATE TABLE IF NOT EXISTS {schema_table} (
                id {pk},{_COMMON_COLUMNS.format(table=schema_table)},
                table_name TEXT NOT NULL,
                definition TEXT NOT NULL,
                statement_timeout REAL
            )
        """,
        f"{schema_table}_unique": f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{schema_table}_identity
            ON {schema_table} (migration_name, arguments, COALESCE(shard, ''))
        """,
        f"{schema_table}_status": f"""
            CREATE INDEX IF NOT EXISTS idx_{schema_table}_status
            ON {schema_table} (status, parent_id)
        """,
        locks_table: f"""
            CREATE TABLE IF NOT EXISTS {locks_table} (
                lock_key TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """,
    }


def create_tables(conn, dialect: Dialect | None = None) -> None:
    """
    Create the migration tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for _name, ddl in build_ddl(dialect or SQLiteDialect()).items():
        conn.execute(ddl)
    conn.commit()


__all__ = ["TABLES", "build_ddl", "create_tables"]
