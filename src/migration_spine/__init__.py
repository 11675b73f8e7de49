"""
migration-spine: background migration execution engine.

Long-running data and schema changes run as many small, resumable steps
scheduled across worker processes, instead of one blocking operation.

- ``migration_spine.models``: migration records and the status state machine
- ``migration_spine.batching``: turns a dataset into bounded, resumable work units
- ``migration_spine.runner``: executes exactly one step of one record
- ``migration_spine.lock``: advisory exclusivity lock per resource
- ``migration_spine.scheduler``: picks and dispatches the next unit of work
- ``migration_spine.engine``: the facade applications call
"""

__version__ = "0.1.0"

from migration_spine.batching import (  # noqa: E402
    BatchCursor,
    IterableCollection,
    KeysetRowRange,
    ListCollection,
    MigrationContext,
    RowRange,
    RowRangeBounds,
)
from migration_spine.config import EngineConfig  # noqa: E402
from migration_spine.connection import ConnectionRegistry, SqliteConnection, connect  # noqa: E402
from migration_spine.data_migrations import DataMigrationRegistry  # noqa: E402
from migration_spine.engine import MigrationEngine  # noqa: E402
from migration_spine.errors import (  # noqa: E402
    DuplicateMigrationError,
    InvalidTransitionError,
    MigrationSpineError,
    StaleRecordError,
)
from migration_spine.events import EventBus, EventType, MigrationEvent  # noqa: E402
from migration_spine.models import (  # noqa: E402
    DataMigrationRecord,
    MigrationKind,
    MigrationStatus,
    SchemaMigrationRecord,
)
from migration_spine.runner import RunOutcome, StepRunner  # noqa: E402
from migration_spine.scheduler import PassReport, Scheduler  # noqa: E402
from migration_spine.settings import MigrationSettings  # noqa: E402

__all__ = [
    "__version__",
    "BatchCursor",
    "IterableCollection",
    "KeysetRowRange",
    "ListCollection",
    "MigrationContext",
    "RowRange",
    "RowRangeBounds",
    "EngineConfig",
    "ConnectionRegistry",
    "SqliteConnection",
    "connect",
    "DataMigrationRegistry",
    "MigrationEngine",
    "DuplicateMigrationError",
    "InvalidTransitionError",
    "MigrationSpineError",
    "StaleRecordError",
    "EventBus",
    "EventType",
    "MigrationEvent",
    "DataMigrationRecord",
    "MigrationKind",
    "MigrationStatus",
    "SchemaMigrationRecord",
    "RunOutcome",
    "StepRunner",
    "PassReport",
    "Scheduler",
    "MigrationSettings",
]
