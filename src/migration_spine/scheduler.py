"""
Scheduler: selects eligible migrations, claims them under the advisory lock
and hands them to the queue.

One ``run()`` is one pass. Per kind it:

1. Requeues ``failed`` records when the retry policy auto-retries them.
2. Collects candidates in id order:
   - ``enqueued`` records (new claims, limited by ``concurrency`` for data)
   - ``running`` data records that are idle between steps
   - errored records whose backoff has elapsed
   - stuck records (no heartbeat within the stuck timeout)
   - ``pausing``/``cancelling`` records, so the runner can finalize them
3. Descends composite parents to one child each.
4. For up to ``max_migrations_per_pass`` candidates: lock, claim, submit.

┌──────────────────────────────────────────────────────────────────┐
│  run(shard, kind)                                                │
│     │                                                            │
│     ├── _retry_failed()         failed → enqueued                │
│     ├── _candidates()           eligible records, one per parent │
│     └── for each candidate:                                      │
│            AdvisoryLock(resource_key).try_with_lock()            │
│              ├── not acquired ──► skipped                        │
│              ├── claim()        enqueued → running, "started"    │
│              └── queue.submit(kind, id)                          │
└──────────────────────────────────────────────────────────────────┘

The lock and the compare-and-set claim make two Schedulers, in one process
or in many, safe to run against the same database at the same time.

Schema statements on the same table never run in the same pass, nor while
one of them is running. An errored schema record (still ``running``, waiting
out its backoff) does not hold its table: another statement on that table
may start before the errored one is retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from migration_spine.config import EngineConfig
from migration_spine.errors import StaleRecordError
from migration_spine.events import EventType
from migration_spine.lock import AdvisoryLock
from migration_spine.logging import LogContext, get_logger
from migration_spine.models import (
    ACTIVE_STATUSES,
    HALTED_STATUSES,
    STOPPING_STATUSES,
    MigrationKind,
    MigrationRecord,
    MigrationStatus,
)
from migration_spine.protocols import TaskQueue
from migration_spine.queue import InlineQueue
from migration_spine.repository import MigrationRepository
from migration_spine.retry import is_stuck, stuck_threshold
from migration_spine.runner import StepRunner

logger = get_logger(__name__)

MigrationRef = tuple[MigrationKind, int]


@dataclass
class PassReport:
    """What one Scheduler pass did."""

    claimed: list[MigrationRef] = field(default_factory=list)
    executed: list[MigrationRef] = field(default_factory=list)
    skipped: list[MigrationRef] = field(default_factory=list)
    requeued: list[MigrationRef] = field(default_factory=list)
    outcomes: dict[MigrationRef, str | None] = field(default_factory=dict)

    def ids(self, name: str, kind: MigrationKind) -> list[int]:
        """Record ids of ``kind`` in the ``claimed``/``executed``/... list."""
        return [record_id for ref_kind, record_id in getattr(self, name) if ref_kind == kind]

    def outcome(self, record: MigrationRecord) -> str | None:
        return self.outcomes.get((record.kind, record.id))

    @property
    def idle(self) -> bool:
        return not (self.executed or self.requeued)

    def to_dict(self) -> dict[str, Any]:
        def refs(values: list[MigrationRef]) -> list[str]:
            return [f"{kind.value}:{record_id}" for kind, record_id in values]

        return {
            "claimed": refs(self.claimed),
            "executed": refs(self.executed),
            "skipped": refs(self.skipped),
            "requeued": refs(self.requeued),
            "outcomes": {
                f"{kind.value}:{record_id}": outcome
                for (kind, record_id), outcome in self.outcomes.items()
            },
        }


class Scheduler:
    """Claims eligible migrations and dispatches their next step.

    Example:
        >>> scheduler = Scheduler(config, repository, StepRunner(config, repository))
        >>> report = scheduler.run()
        >>> report.executed
        [(<MigrationKind.DATA: 'data'>, 1)]
    """

    def __init__(
        self,
        config: EngineConfig,
        repository: MigrationRepository,
        runner: StepRunner,
        queue: TaskQueue | None = None,
    ) -> None:
        self.config = config
        self.settings = config.settings
        self.repository = repository
        self.runner = runner
        self.queue = queue or InlineQueue(runner, repository)
        self.events = config.events

    def run(self, shard: str | None = None, kind: MigrationKind | None = None) -> PassReport:
        """Run one pass over ``kind`` (both kinds by default)."""
        report = PassReport()
        kinds = [MigrationKind(kind)] if kind is not None else list(MigrationKind)
        for migration_kind in kinds:
            now = self.config.clock()
            self._retry_failed(migration_kind, shard, now, report)
            self._run_kind(migration_kind, shard, now, report)
        logger.debug("scheduler_pass_finished", **report.to_dict())
        return report

    # -- Retry pass -----------------------------------------------------------

    def _retry_failed(
        self, kind: MigrationKind, shard: str | None, now: datetime, report: PassReport
    ) -> None:
        policy = self.config.retry_policy
        if not policy.auto_retry_failed:
            return
        for record in self.repository.list(kind, statuses=[MigrationStatus.FAILED], top_level=True):
            if shard is not None and not record.composite and record.shard != shard:
                continue
            if not policy.should_auto_retry(record, now):
                continue
            try:
                self.repository.retry(record)
            except StaleRecordError:
                continue
            self.events.emit(EventType.RETRIED, record, automatic=True)
            report.requeued.append((kind, record.id))

    # -- Candidate selection --------------------------------------------------

    def _run_kind(
        self, kind: MigrationKind, shard: str | None, now: datetime, report: PassReport
    ) -> None:
        running = [
            record
            for record in self.repository.list(kind, statuses=list(ACTIVE_STATUSES))
            if not record.composite
        ]
        busy_keys = {
            record.resource_key
            for record in running
            if kind == MigrationKind.SCHEMA
            and record.status == MigrationStatus.RUNNING
            and not record.errored
            and not is_stuck(record, now, self.settings)
        }
        active_count = len(running)

        executed = 0
        for record in self._candidates(kind, shard, now):
            if executed >= self.settings.max_migrations_per_pass:
                break
            if record.resource_key in busy_keys and record.status not in STOPPING_STATUSES:
                report.skipped.append((kind, record.id))
                continue
            if record.status == MigrationStatus.ENQUEUED and kind == MigrationKind.DATA:
                if active_count >= self.settings.concurrency:
                    report.skipped.append((kind, record.id))
                    continue

            if self._execute(record, report):
                executed += 1
                if record.status == MigrationStatus.ENQUEUED:
                    active_count += 1
                if kind == MigrationKind.SCHEMA:
                    # No second statement on the same table in this pass.
                    busy_keys.add(record.resource_key)

    def _candidates(self, kind: MigrationKind, shard: str | None, now: datetime) -> list[MigrationRecord]:
        statuses = [MigrationStatus.ENQUEUED, *ACTIVE_STATUSES]
        candidates = []
        for record in self.repository.list(kind, statuses=statuses, top_level=True):
            if record.composite:
                child = self._pick_child(record, shard)
                if child is None:
                    continue
                record = child
            elif shard is not None and record.shard != shard:
                continue
            if self._eligible(record, now):
                candidates.append(record)
        return candidates

    def _pick_child(self, parent: MigrationRecord, shard: str | None) -> MigrationRecord | None:
        """The one child of ``parent`` this pass may advance."""
        if parent.status not in (MigrationStatus.ENQUEUED, MigrationStatus.RUNNING):
            return None
        children = self.repository.children(parent)
        if shard is not None:
            children = [child for child in children if child.shard == shard]
        for child in children:
            if child.status in STOPPING_STATUSES:
                return child
        if any(child.status in HALTED_STATUSES for child in children):
            return None
        for child in children:
            if child.status == MigrationStatus.RUNNING:
                return child
        for child in children:
            if child.status == MigrationStatus.ENQUEUED:
                return child
        return None

    def _eligible(self, record: MigrationRecord, now: datetime) -> bool:
        if record.status in (MigrationStatus.ENQUEUED, *STOPPING_STATUSES):
            return True
        if record.status != MigrationStatus.RUNNING:
            return False
        return self._eligible_running(record, now)

    def _eligible_running(self, record: MigrationRecord, now: datetime) -> bool:
        if record.status != MigrationStatus.RUNNING:
            return False
        if is_stuck(record, now, self.settings):
            logger.warning(
                "migration_stuck",
                migration_id=record.id,
                kind=record.kind.value,
                updated_at=record.updated_at.isoformat(),
            )
            return True
        if record.errored:
            return self.config.retry_policy.is_due(record, now)
        # Idle data records take their next step; a running schema record
        # without an error is executing somewhere else.
        return record.kind == MigrationKind.DATA

    # -- Execution ------------------------------------------------------------

    def _execute(self, record: MigrationRecord, report: PassReport) -> bool:
        ref = (record.kind, record.id)
        lock = AdvisoryLock(
            self.config.database,
            self.config.database_dialect,
            record.resource_key,
            ttl_seconds=stuck_threshold(record, self.settings),
            clock=self.config.clock,
        )
        with lock.try_with_lock() as acquired:
            if not acquired:
                logger.debug("migration_locked", key=record.resource_key)
                report.skipped.append(ref)
                return False

            with LogContext(migration_id=record.id, kind=record.kind.value):
                try:
                    self._claim(record, report)
                except StaleRecordError:
                    logger.debug("migration_claim_lost")
                    report.skipped.append(ref)
                    return False

                try:
                    outcome = self.queue.submit(record.kind, record.id)
                except Exception as e:
                    if self.settings.run_inline:
                        raise
                    logger.exception("migration_submit_failed", error=str(e))
                    report.skipped.append(ref)
                    return False

        report.executed.append(ref)
        report.outcomes[ref] = outcome
        return True

    def _claim(self, record: MigrationRecord, report: PassReport) -> None:
        fresh = self.repository.reload(record)
        if fresh.status == MigrationStatus.ENQUEUED:
            self.repository.claim(fresh)
            self.events.emit(EventType.STARTED, fresh)
            report.claimed.append((record.kind, record.id))
        elif fresh.status != record.status:
            raise StaleRecordError(f"{record.kind.value} migration {record.id} changed status")
        elif fresh.errored:
            self.events.emit(EventType.RETRIED, fresh, attempts=fresh.attempts)


__all__ = ["Scheduler", "PassReport"]
