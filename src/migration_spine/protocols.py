"""
Collaborator interfaces for the migration engine.

The engine is written against these narrow protocols so that the database
driver, the task queue, the throttle policy and the static safety analyzer
can be swapped without touching engine code.

Architecture:
    ::

        ┌────────────────────┐   execute/commit/rollback   ┌──────────────┐
        │ Scheduler / Runner │ ──────────────────────────▶ │  Connection  │
        └────────────────────┘                              └──────────────┘
                 │   throttled?        ┌───────────┐
                 ├───────────────────▶ │ Throttler │
                 │   terminal failure  ┌──────────────┐
                 ├───────────────────▶ │ ErrorHandler │
                 │   submit(kind, id)  ┌───────────┐
                 └───────────────────▶ │ TaskQueue │
                                       └───────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from migration_spine.models import MigrationKind, MigrationRecord


@runtime_checkable
class Connection(Protocol):
    """
    Minimal synchronous DB-API connection.

    ``sqlite3.Connection`` satisfies it directly; ``SqliteConnection`` and
    ``PostgresConnection`` adapt cursor-based drivers. ``execute`` must
    return an object exposing ``fetchone``/``fetchall``/``rowcount``.
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters."""
        ...

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        """Execute SQL statement for multiple parameter sets."""
        ...

    def commit(self) -> None:
        """Commit current transaction."""
        ...

    def rollback(self) -> None:
        """Rollback current transaction."""
        ...


@runtime_checkable
class Throttler(Protocol):
    """Returns True when the current step should be skipped."""

    def __call__(self) -> bool: ...


@runtime_checkable
class ErrorHandler(Protocol):
    """Invoked once when a migration reaches ``failed``."""

    def __call__(self, error: BaseException, record: MigrationRecord) -> None: ...


@runtime_checkable
class TaskQueue(Protocol):
    """Hands "run one step of this record" to an executor."""

    def submit(self, kind: MigrationKind, record_id: int) -> str | None:
        """Submit a step. Returns an external task id when there is one."""
        ...


# -- Static safety analyzer (foreground migrations) --------------------------


class VerdictStatus(str, Enum):
    SAFE = "safe"
    UNSAFE = "unsafe"


@dataclass(frozen=True)
class OperationDescriptor:
    """A proposed schema change, described without executing it."""

    operation: str  # "add_index", "add_column", "change_column_null", ...
    table_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    statement: str | None = None


@dataclass(frozen=True)
class Verdict:
    status: VerdictStatus
    reason: str | None = None
    suggested_statement: str | None = None

    @property
    def safe(self) -> bool:
        return self.status == VerdictStatus.SAFE

    @classmethod
    def ok(cls) -> Verdict:
        return cls(VerdictStatus.SAFE)

    @classmethod
    def unsafe(cls, reason: str, suggested_statement: str | None = None) -> Verdict:
        return cls(VerdictStatus.UNSAFE, reason, suggested_statement)


@runtime_checkable
class SafetyAnalyzer(Protocol):
    """Decides whether a foreground schema change may proceed."""

    def check(self, operation: OperationDescriptor) -> Verdict: ...


__all__ = [
    "Connection",
    "Throttler",
    "ErrorHandler",
    "TaskQueue",
    "OperationDescriptor",
    "Verdict",
    "VerdictStatus",
    "SafetyAnalyzer",
]
