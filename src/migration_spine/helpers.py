"""Enqueue helpers for the common background migrations.

Each helper takes the :class:`~migration_spine.engine.MigrationEngine` first
and forwards ``max_attempts``, ``connection_class_name`` and (for data
migrations) ``iteration_pause`` or (for schema migrations)
``statement_timeout`` to the enqueue call.

Example:
    >>> backfill_column_in_background(engine, "users", "admin", False)
    >>> add_index_in_background(engine, "users", ["email"], unique=True)
    >>> ensure_background_schema_migration_succeeded(engine, "index_users_on_email")
"""

from __future__ import annotations

from typing import Any

from migration_spine.engine import MigrationEngine
from migration_spine.errors import ConfigError, MigrationNotFoundError, ValidationError
from migration_spine.logging import get_logger
from migration_spine.models import (
    DataMigrationRecord,
    MigrationKind,
    MigrationStatus,
    SchemaMigrationRecord,
)
from migration_spine.repository import canonical_arguments

logger = get_logger(__name__)


# =============================================================================
# DATA MIGRATIONS
# =============================================================================


def backfill_column_in_background(
    engine: MigrationEngine, table_name: str, column_name: str, value: Any, **options: Any
) -> list[DataMigrationRecord]:
    """Set ``column_name`` to ``value`` on every row that differs."""
    return backfill_columns_in_background(engine, table_name, {column_name: value}, **options)


def backfill_columns_in_background(
    engine: MigrationEngine, table_name: str, updates: dict[str, Any], **options: Any
) -> list[DataMigrationRecord]:
    return engine.enqueue_data_migration("BackfillColumn", table_name, updates, **options)


def copy_column_in_background(
    engine: MigrationEngine,
    table_name: str,
    copy_from: str,
    copy_to: str,
    type_cast_function: str | None = None,
    **options: Any,
) -> list[DataMigrationRecord]:
    """Copy one column into another, e.g. for a column type change.

    ``type_cast_function`` is a SQL function name (``"jsonb"``) or a full
    expression applied to the source column.
    """
    type_cast_functions = {copy_from: type_cast_function} if type_cast_function else {}
    return copy_columns_in_background(
        engine, table_name, [copy_from], [copy_to], type_cast_functions, **options
    )


def copy_columns_in_background(
    engine: MigrationEngine,
    table_name: str,
    copy_from: list[str],
    copy_to: list[str],
    type_cast_functions: dict[str, str] | None = None,
    **options: Any,
) -> list[DataMigrationRecord]:
    if len(copy_from) != len(copy_to):
        raise ValidationError("Number of source and destination columns must match")
    return engine.enqueue_data_migration(
        "CopyColumn", table_name, list(copy_from), list(copy_to), type_cast_functions or {}, **options
    )


def reset_counters_in_background(
    engine: MigrationEngine,
    table_name: str,
    counters: dict[str, list[str]],
    touch: list[str] | None = None,
    **options: Any,
) -> list[DataMigrationRecord]:
    """Recompute counter columns; ``counters`` maps column to ``[child_table, foreign_key]``."""
    return engine.enqueue_data_migration("ResetCounters", table_name, counters, touch or [], **options)


def delete_orphaned_records_in_background(
    engine: MigrationEngine, table_name: str, associations: list[list[str]], **options: Any
) -> list[DataMigrationRecord]:
    return engine.enqueue_data_migration("DeleteOrphanedRecords", table_name, associations, **options)


def delete_associated_records_in_background(
    engine: MigrationEngine,
    table_name: str,
    foreign_key: str,
    parent_id: Any,
    **options: Any,
) -> list[DataMigrationRecord]:
    return engine.enqueue_data_migration(
        "DeleteAssociatedRecords", table_name, foreign_key, parent_id, **options
    )


def perform_action_on_relation_in_background(
    engine: MigrationEngine,
    table_name: str,
    conditions: dict[str, Any],
    action: str,
    updates: dict[str, Any] | None = None,
    **options: Any,
) -> list[DataMigrationRecord]:
    """Update or delete every row matching ``conditions``."""
    if action not in ("update", "delete"):
        raise ValidationError(f"action must be 'update' or 'delete', got {action!r}")
    arguments: list[Any] = [table_name, conditions, action]
    if updates:
        arguments.append(updates)
    return engine.enqueue_data_migration("PerformActionOnRelation", *arguments, **options)


# =============================================================================
# SCHEMA MIGRATIONS
# =============================================================================


def index_name_for(table_name: str, columns: list[str]) -> str:
    return f"index_{table_name}_on_{'_and_'.join(columns)}"


def _index_exists(engine: MigrationEngine, table_name: str, name: str, connection_class_name: str | None) -> bool:
    shard = engine.config.connections.shard_names(connection_class_name)[0]
    conn, dialect = engine.config.connections.get(connection_class_name, shard)
    return conn.execute(dialect.index_validity_query(), (table_name, name)).fetchone() is not None


def _dialect(engine: MigrationEngine, connection_class_name: str | None):
    shard = engine.config.connections.shard_names(connection_class_name)[0]
    return engine.config.connections.get(connection_class_name, shard)[1]


def add_index_in_background(
    engine: MigrationEngine,
    table_name: str,
    columns: list[str] | str,
    *,
    name: str | None = None,
    unique: bool = False,
    where: str | None = None,
    **options: Any,
) -> SchemaMigrationRecord | None:
    """Build an index concurrently (where the database supports it).

    Returns None, without enqueueing, when an index with that name exists.
    """
    columns = [columns] if isinstance(columns, str) else list(columns)
    name = name or index_name_for(table_name, columns)
    connection_class_name = options.get("connection_class_name")

    if _index_exists(engine, table_name, name, connection_class_name):
        logger.warning(
            "index_not_enqueued",
            index=name,
            reason="an index with this name already exists",
        )
        return None

    definition = _dialect(engine, connection_class_name).create_index_sql(
        name, table_name, columns, unique=unique, where=where
    )
    return engine.enqueue_schema_migration(name, table_name, definition, **options)


def remove_index_in_background(
    engine: MigrationEngine, table_name: str, name: str, **options: Any
) -> SchemaMigrationRecord | None:
    """Drop an index concurrently. Returns None when the index does not exist."""
    if not name:
        raise ValidationError("Index name must be specified")
    connection_class_name = options.get("connection_class_name")

    if not _index_exists(engine, table_name, name, connection_class_name):
        logger.warning("index_not_enqueued", index=name, reason="the index does not exist")
        return None

    definition = _dialect(engine, connection_class_name).drop_index_sql(name)
    return engine.enqueue_schema_migration(f"remove_{name}", table_name, definition, **options)


def validate_constraint_in_background(
    engine: MigrationEngine, table_name: str, constraint_name: str, **options: Any
) -> SchemaMigrationRecord:
    definition = _dialect(engine, options.get("connection_class_name")).validate_constraint_sql(
        table_name, constraint_name
    )
    if definition is None:
        raise ConfigError("The database does not support validating constraints separately")
    return engine.enqueue_schema_migration(constraint_name, table_name, definition, **options)


# =============================================================================
# CHECKS
# =============================================================================


def ensure_background_data_migration_succeeded(
    engine: MigrationEngine, migration_name: str, arguments: list[Any] | None = None
) -> None:
    """Raise unless every record for the migration (and arguments) succeeded."""
    configuration: dict[str, Any] = {"migration_name": migration_name}
    records = [
        record
        for record in engine.list(MigrationKind.DATA, top_level=False)
        if record.migration_name == migration_name
    ]
    if arguments is not None:
        configuration["arguments"] = canonical_arguments(arguments)
        records = [
            record
            for record in records
            if canonical_arguments(record.arguments) == configuration["arguments"]
        ]

    if not records:
        raise MigrationNotFoundError(
            f"Could not find background data migration(s) for the given configuration: {configuration}"
        )
    if not all(record.status == MigrationStatus.SUCCEEDED for record in records):
        raise ValidationError(
            "Expected background data migration(s) for the given configuration "
            f"to be marked as 'succeeded': {configuration}"
        )


def ensure_background_schema_migration_succeeded(engine: MigrationEngine, migration_name: str) -> None:
    record = engine.repository.find(MigrationKind.SCHEMA, migration_name, [], None)
    if record is None:
        raise MigrationNotFoundError(f"Could not find background schema migration: {migration_name!r}")
    if record.status != MigrationStatus.SUCCEEDED:
        raise ValidationError(
            f"Expected background schema migration {migration_name!r} to be marked as "
            f"'succeeded', but it is {record.status.value!r}"
        )


__all__ = [
    "backfill_column_in_background",
    "backfill_columns_in_background",
    "copy_column_in_background",
    "copy_columns_in_background",
    "reset_counters_in_background",
    "delete_orphaned_records_in_background",
    "delete_associated_records_in_background",
    "perform_action_on_relation_in_background",
    "index_name_for",
    "add_index_in_background",
    "remove_index_in_background",
    "validate_constraint_in_background",
    "ensure_background_data_migration_succeeded",
    "ensure_background_schema_migration_succeeded",
]
