"""Task queues the Scheduler hands claimed records to.

``InlineQueue`` runs the step immediately, inside the Scheduler's lock.
``CeleryQueue`` submits ``(kind, record_id)`` to a Celery worker; the worker
runs :func:`perform_step`, which takes the record's advisory lock again
before stepping it.

Worker setup::

    from celery import Celery
    from migration_spine.queue import register_celery_task

    app = Celery("migrations", broker="redis://localhost:6379/0")
    register_celery_task(app, engine_factory=build_engine)

Requires ``pip install migration-spine[celery]`` for the Celery queue.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from migration_spine.lock import AdvisoryLock
from migration_spine.models import MigrationKind
from migration_spine.repository import MigrationRepository
from migration_spine.retry import stuck_threshold
from migration_spine.runner import StepRunner

if TYPE_CHECKING:
    from migration_spine.engine import MigrationEngine

logger = logging.getLogger(__name__)

DEFAULT_TASK_NAME = "migration_spine.perform_step"


def _require_celery():
    """Validate that celery is installed."""
    try:
        import celery  # noqa: F401

        return celery
    except ImportError:
        raise ImportError(
            "Celery is required for CeleryQueue. "
            "Install it with: pip install migration-spine[celery]"
        ) from None


class InlineQueue:
    """Runs the step in the calling process. Returns the step outcome."""

    name = "inline"

    def __init__(self, runner: StepRunner, repository: MigrationRepository) -> None:
        self.runner = runner
        self.repository = repository

    def submit(self, kind: MigrationKind, record_id: int) -> str | None:
        record = self.repository.get(MigrationKind(kind), record_id)
        return self.runner.run(record).value


class CeleryQueue:
    """Sends each step to a Celery worker. Returns the Celery task id.

    Example:
        >>> queue = CeleryQueue(app)
        >>> engine = MigrationEngine(config, queue=queue)
    """

    name = "celery"

    def __init__(self, celery_app: Any, task_name: str = DEFAULT_TASK_NAME) -> None:
        _require_celery()
        if celery_app is None:
            raise ValueError("CeleryQueue requires a Celery app instance")
        self.celery_app = celery_app
        self.task_name = task_name

    def submit(self, kind: MigrationKind, record_id: int) -> str | None:
        result = self.celery_app.send_task(self.task_name, args=[MigrationKind(kind).value, record_id])
        logger.debug(f"Submitted {kind} migration {record_id} as task {result.id}")
        return result.id


def perform_step(engine: MigrationEngine, kind: MigrationKind | str, record_id: int) -> str | None:
    """Worker entry: run one step of a record under its advisory lock.

    Returns the outcome, or None when another worker holds the lock.
    Step errors are recorded on the record by the runner; anything else is
    logged here so the worker keeps consuming.
    """
    config = engine.config
    record = engine.repository.get(MigrationKind(kind), record_id)
    lock = AdvisoryLock(
        config.database,
        config.database_dialect,
        record.resource_key,
        ttl_seconds=stuck_threshold(record, config.settings),
        clock=config.clock,
    )
    with lock.try_with_lock() as acquired:
        if not acquired:
            logger.info(f"Skipping {record.kind.value} migration {record_id}: locked by another worker")
            return None
        try:
            return engine.runner.run(engine.repository.reload(record)).value
        except Exception as e:
            if config.settings.run_inline:
                raise
            logger.exception(f"Step of {record.kind.value} migration {record_id} failed: {e}")
            return None


def register_celery_task(
    celery_app: Any,
    engine_factory: Callable[[], MigrationEngine],
    task_name: str = DEFAULT_TASK_NAME,
) -> Any:
    """Register the worker task that :class:`CeleryQueue` sends to."""
    _require_celery()

    @celery_app.task(name=task_name)
    def perform_step_task(kind: str, record_id: int) -> str | None:
        return perform_step(engine_factory(), kind, record_id)

    return perform_step_task


__all__ = [
    "InlineQueue",
    "CeleryQueue",
    "perform_step",
    "register_celery_task",
    "DEFAULT_TASK_NAME",
]
