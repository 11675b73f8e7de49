"""
Structured error types for migration-spine.

Every error raised by the engine itself derives from MigrationSpineError and
carries a category, a retryable flag and an ErrorContext. Errors raised by
user processing code or by the database while a step runs are NOT wrapped:
the Step Runner records them by their own class name so operators see the
real failure (``sqlite3.OperationalError``, ``psycopg.errors.LockNotAvailable``).

Taxonomy:
    ::

        MigrationSpineError
        ├── ValidationError            (VALIDATION, never retried)
        │   ├── InvalidTransitionError
        │   ├── DuplicateMigrationError
        │   ├── TableNotFoundError
        │   ├── MigrationNotFoundError
        │   └── UnknownDataMigrationError
        ├── ConfigError                (CONFIG, never retried)
        ├── ConcurrencyError           (CONCURRENCY, retried by the next pass)
        │   └── StaleRecordError
        └── ExecutionError             (EXECUTION)

Usage:
    from migration_spine.errors import InvalidTransitionError

    try:
        repository.transition(record, MigrationStatus.SUCCEEDED)
    except InvalidTransitionError as e:
        logger.warning("transition_rejected", error=e.to_dict())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and retry decisions."""

    VALIDATION = "VALIDATION"  # Illegal transition, duplicate, missing table
    CONFIG = "CONFIG"  # Missing or invalid settings
    CONCURRENCY = "CONCURRENCY"  # Lost a claim race
    DATABASE = "DATABASE"  # Connection or query failure
    EXECUTION = "EXECUTION"  # Step could not be executed
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        migration_id: Id of the migration record involved
        migration_name: Logical migration name
        kind: "data" or "schema"
        shard: Shard label if any
        table_name: Target table for schema migrations
        metadata: Additional key-value pairs
    """

    migration_id: int | None = None
    migration_name: str | None = None
    kind: str | None = None
    shard: str | None = None
    table_name: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["migration_id", "migration_name", "kind", "shard", "table_name"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MigrationSpineError(Exception):
    """
    Base exception for all migration-spine errors.

    Subclasses set ``default_category`` and ``default_retryable``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MigrationSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise TableNotFoundError("users").with_context(shard="shard_one")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(MigrationSpineError):
    """Rejected before anything is persisted. Never retried."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class InvalidTransitionError(ValidationError):
    """A status change that the state machine does not allow."""

    def __init__(self, current: Any, target: Any, **kwargs: Any):
        self.current = current
        self.target = target
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"cannot transition from {current_value} to {target_value}", **kwargs
        )


class DuplicateMigrationError(ValidationError):
    """A record with the same (migration_name, arguments, shard) already exists."""


class TableNotFoundError(ValidationError):
    """The target table of a schema migration does not exist."""

    def __init__(self, table_name: str, **kwargs: Any):
        self.table_name = table_name
        super().__init__(f"table {table_name!r} does not exist", **kwargs)


class MigrationNotFoundError(ValidationError):
    """No migration record with the requested id."""


class UnknownDataMigrationError(ValidationError):
    """No data migration is registered under the requested name."""

    def __init__(self, name: str, **kwargs: Any):
        self.name = name
        super().__init__(f"data migration {name!r} is not registered", **kwargs)


# =============================================================================
# CONFIG ERRORS
# =============================================================================


class ConfigError(MigrationSpineError):
    """Missing or invalid engine configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# CONCURRENCY ERRORS
# =============================================================================


class ConcurrencyError(MigrationSpineError):
    """Another worker changed the record first."""

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = True


class StaleRecordError(ConcurrencyError):
    """A compare-and-set status update matched no row."""


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(MigrationSpineError):
    """The engine cannot execute a step (e.g. unsupported capability)."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = False


def error_class_name(error: BaseException) -> str:
    """Qualified class name used for the persisted ``error_class`` column."""
    cls = type(error)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MigrationSpineError",
    "ValidationError",
    "InvalidTransitionError",
    "DuplicateMigrationError",
    "TableNotFoundError",
    "MigrationNotFoundError",
    "UnknownDataMigrationError",
    "ConfigError",
    "ConcurrencyError",
    "StaleRecordError",
    "ExecutionError",
    "error_class_name",
]
