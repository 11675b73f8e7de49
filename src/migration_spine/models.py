"""
Migration records and their state machine.

A migration record is one persisted unit of background work: a *data*
migration (iterate a dataset in bounded steps) or a *schema* migration (one
DDL statement). Sharded work is stored as a composite parent that owns no
work itself plus one child per shard; the parent's status is derived from
its children.

Valid transition graph::

    ENQUEUED   → RUNNING
    RUNNING    → SUCCEEDED | FAILED | PAUSING | CANCELLING
    PAUSING    → PAUSED
    CANCELLING → CANCELLED
    PAUSED     → ENQUEUED | RUNNING
    FAILED     → ENQUEUED (retry)
    SUCCEEDED  → (terminal)
    CANCELLED  → (terminal)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Union

from migration_spine.errors import InvalidTransitionError, ValidationError

MAX_IDENTIFIER_LENGTH = 63


def utc_now() -> datetime:
    return datetime.now(UTC)


class MigrationKind(str, Enum):
    DATA = "data"
    SCHEMA = "schema"


class MigrationStatus(str, Enum):
    """Status of a migration record.

    ``pausing`` and ``cancelling`` are requests: they are set by an operator
    and turned into ``paused``/``cancelled`` by the Step Runner at the next
    step boundary.
    """

    ENQUEUED = "enqueued"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


VALID_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.ENQUEUED: frozenset({MigrationStatus.RUNNING, MigrationStatus.CANCELLED}),
    MigrationStatus.RUNNING: frozenset({
        MigrationStatus.SUCCEEDED,
        MigrationStatus.FAILED,
        MigrationStatus.PAUSING,
        MigrationStatus.CANCELLING,
    }),
    MigrationStatus.PAUSING: frozenset({MigrationStatus.PAUSED}),
    MigrationStatus.CANCELLING: frozenset({MigrationStatus.CANCELLED}),
    MigrationStatus.PAUSED: frozenset({MigrationStatus.ENQUEUED, MigrationStatus.RUNNING}),
    MigrationStatus.FAILED: frozenset({MigrationStatus.ENQUEUED}),
    MigrationStatus.SUCCEEDED: frozenset(),
    MigrationStatus.CANCELLED: frozenset(),
}

# A composite parent settles straight to cancelled once its children are done.
COMPOSITE_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    **VALID_TRANSITIONS,
    MigrationStatus.RUNNING: VALID_TRANSITIONS[MigrationStatus.RUNNING] | {MigrationStatus.CANCELLED},
}

ACTIVE_STATUSES = frozenset({
    MigrationStatus.RUNNING,
    MigrationStatus.PAUSING,
    MigrationStatus.CANCELLING,
})

STOPPING_STATUSES = frozenset({MigrationStatus.PAUSING, MigrationStatus.CANCELLING})

# A composite is not advanced while any child is in one of these.
HALTED_STATUSES = frozenset({
    MigrationStatus.PAUSING,
    MigrationStatus.PAUSED,
    MigrationStatus.CANCELLING,
    MigrationStatus.CANCELLED,
})

TERMINAL_STATUSES = frozenset({
    MigrationStatus.SUCCEEDED,
    MigrationStatus.FAILED,
    MigrationStatus.CANCELLED,
})


def validate_transition(
    current: MigrationStatus, target: MigrationStatus, composite: bool = False
) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Composite parents use :data:`COMPOSITE_TRANSITIONS`.

    Example:
        >>> validate_transition(MigrationStatus.RUNNING, MigrationStatus.SUCCEEDED)
        >>> validate_transition(MigrationStatus.SUCCEEDED, MigrationStatus.RUNNING)
        InvalidTransitionError: cannot transition from succeeded to running
    """
    table = COMPOSITE_TRANSITIONS if composite else VALID_TRANSITIONS
    allowed = table.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current, target)


def aggregate_status(children: list[MigrationStatus]) -> MigrationStatus:
    """Status a composite parent must have given its children's statuses."""
    if not children:
        return MigrationStatus.ENQUEUED
    if any(status == MigrationStatus.FAILED for status in children):
        return MigrationStatus.FAILED
    if all(status == MigrationStatus.SUCCEEDED for status in children):
        return MigrationStatus.SUCCEEDED
    if all(status in (MigrationStatus.SUCCEEDED, MigrationStatus.CANCELLED) for status in children):
        return MigrationStatus.CANCELLED
    if all(status == MigrationStatus.ENQUEUED for status in children):
        return MigrationStatus.ENQUEUED
    return MigrationStatus.RUNNING


def validate_composite_status(
    target: MigrationStatus, children: list[MigrationStatus]
) -> None:
    """Reject a parent status that contradicts its children."""
    if target == MigrationStatus.CANCELLED:
        if aggregate_status(children) != MigrationStatus.CANCELLED:
            raise ValidationError(
                "composite migration cannot be cancelled: every child must be finished and one cancelled"
            )
        return
    if target in HALTED_STATUSES:
        raise ValidationError(
            f"composite migration cannot be {target.value}: pause and cancel apply to its children"
        )
    if target == MigrationStatus.SUCCEEDED and not all(
        status == MigrationStatus.SUCCEEDED for status in children
    ):
        raise ValidationError("composite migration cannot succeed: all child migrations must be succeeded")
    if target == MigrationStatus.FAILED and MigrationStatus.FAILED not in children:
        raise ValidationError("composite migration cannot fail: no child migration has failed")


# -- Topology -----------------------------------------------------------------


@dataclass(frozen=True)
class Standalone:
    """A record that executes its own steps and has no parent."""


@dataclass(frozen=True)
class CompositeParent:
    """Owns no work; aggregates one child per shard."""


@dataclass(frozen=True)
class Child:
    parent_id: int


Topology = Union[Standalone, CompositeParent, Child]


# -- Records --------------------------------------------------------------------


@dataclass
class MigrationRecord:
    """Fields shared by both migration kinds."""

    kind: ClassVar[MigrationKind]

    migration_name: str
    arguments: list[Any] = field(default_factory=list)
    shard: str | None = None
    status: MigrationStatus = MigrationStatus.ENQUEUED
    composite: bool = False
    parent_id: int | None = None
    connection_class_name: str | None = None
    attempts: int = 0
    max_attempts: int = 5
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_class: str | None = None
    error_message: str | None = None
    backtrace: list[str] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.composite and self.parent_id is not None:
            raise ValidationError("a composite migration cannot have a parent")
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if not self.migration_name:
            raise ValidationError("migration_name is required")

    @property
    def topology(self) -> Topology:
        if self.composite:
            return CompositeParent()
        if self.parent_id is not None:
            return Child(self.parent_id)
        return Standalone()

    @property
    def resource_key(self) -> str:
        """Key of the advisory lock a step on this record must hold."""
        raise NotImplementedError

    @property
    def errored(self) -> bool:
        """Running, but the last step failed and attempts remain."""
        return self.status == MigrationStatus.RUNNING and self.error_class is not None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float | None:
        """Percentage complete for a non-composite record."""
        if self.status == MigrationStatus.SUCCEEDED:
            return 100.0
        return self._step_progress()

    def _step_progress(self) -> float | None:
        return 0.0

    def child_for(self, shard: str | None) -> MigrationRecord:
        """Build the child record of this composite for one shard."""
        if not self.composite or self.id is None:
            raise ValidationError("only a persisted composite migration can have children")
        values = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("id", "status", "created_at", "updated_at", "started_at", "finished_at")
        }
        values.update(shard=shard, composite=False, parent_id=self.id, attempts=0)
        return type(self)(**values)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "migration_name": self.migration_name,
            "arguments": self.arguments,
            "shard": self.shard,
            "status": self.status.value,
            "composite": self.composite,
            "parent_id": self.parent_id,
            "connection_class_name": self.connection_class_name,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_class": self.error_class,
            "error_message": self.error_message,
            "backtrace": self.backtrace,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class DataMigrationRecord(MigrationRecord):
    """Iterates a dataset registered under ``migration_name`` in bounded steps."""

    kind: ClassVar[MigrationKind] = MigrationKind.DATA

    cursor: Any = None
    tick_count: int = 0
    tick_total: int | None = None
    time_running: float = 0.0
    iteration_pause: float = 0.0

    @property
    def resource_key(self) -> str:
        return f"data:{self.id}"

    def _step_progress(self) -> float | None:
        if self.tick_total is None:
            return None
        if self.tick_total == 0:
            return 0.0
        return min(self.tick_count / self.tick_total, 1) * 100

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            cursor=self.cursor,
            tick_count=self.tick_count,
            tick_total=self.tick_total,
            time_running=self.time_running,
            iteration_pause=self.iteration_pause,
            progress=self.progress,
        )
        return result


_INDEX_ADDITION = re.compile(r"create (unique )?index", re.IGNORECASE)
_INDEX_NAME = re.compile(
    r"create\s+(?:unique\s+)?index\s+(?:concurrently\s+)?(?:if\s+not\s+exists\s+)?(?!on\s)\"?(\w+)\"?",
    re.IGNORECASE,
)


@dataclass
class SchemaMigrationRecord(MigrationRecord):
    """Executes one DDL statement against ``table_name``."""

    kind: ClassVar[MigrationKind] = MigrationKind.SCHEMA

    table_name: str = ""
    definition: str = ""
    statement_timeout: float | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.table_name:
            raise ValidationError("table_name is required")
        if len(self.table_name) > MAX_IDENTIFIER_LENGTH:
            raise ValidationError(
                f"table_name is too long (maximum is {MAX_IDENTIFIER_LENGTH} characters)"
            )
        if not self.definition and not self.composite:
            raise ValidationError("definition is required")

    @property
    def resource_key(self) -> str:
        return f"schema:{self.connection_class_name or 'primary'}:{self.shard or ''}:{self.table_name}"

    @property
    def index_addition(self) -> bool:
        return bool(_INDEX_ADDITION.search(self.definition))

    @property
    def index_name(self) -> str:
        """Name of the index an index addition creates."""
        match = _INDEX_NAME.search(self.definition)
        return match.group(1) if match else self.migration_name

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            table_name=self.table_name,
            definition=self.definition,
            statement_timeout=self.statement_timeout,
            progress=self.progress,
        )
        return result


def composite_progress(children: list[MigrationRecord]) -> float:
    """Mean of the children's progress, each weighted equally."""
    if not children:
        return 0.0
    total = sum(child.progress or 0.0 for child in children)
    return round(total / len(children), 2)


RECORD_TYPES: dict[MigrationKind, type[MigrationRecord]] = {
    MigrationKind.DATA: DataMigrationRecord,
    MigrationKind.SCHEMA: SchemaMigrationRecord,
}


__all__ = [
    "MigrationKind",
    "MigrationStatus",
    "COMPOSITE_TRANSITIONS",
    "VALID_TRANSITIONS",
    "ACTIVE_STATUSES",
    "STOPPING_STATUSES",
    "HALTED_STATUSES",
    "TERMINAL_STATUSES",
    "validate_transition",
    "aggregate_status",
    "validate_composite_status",
    "Standalone",
    "CompositeParent",
    "Child",
    "Topology",
    "MigrationRecord",
    "DataMigrationRecord",
    "SchemaMigrationRecord",
    "composite_progress",
    "RECORD_TYPES",
    "utc_now",
]
