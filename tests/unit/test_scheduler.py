"""Tests for the Scheduler: candidate selection, claiming, exclusivity and the pass report."""

from __future__ import annotations

import pytest

from migration_spine.dialect import SQLiteDialect
from migration_spine.errors import StaleRecordError
from migration_spine.events import EventType
from migration_spine.lock import AdvisoryLock
from migration_spine.models import (
    DataMigrationRecord,
    MigrationKind,
    MigrationStatus,
    SchemaMigrationRecord,
)
from migration_spine.retry import ConstantBackoff, RetryPolicy
from migration_spine.scheduler import PassReport, Scheduler

S = MigrationStatus
DATA = MigrationKind.DATA
SCHEMA = MigrationKind.SCHEMA


@pytest.fixture()
def enqueue(engine):
    def enqueue(count: int = 5):
        return engine.enqueue_data_migration("CollectNumbers", count)[0]

    return enqueue


def _schema(repository, name: str, definition: str, table: str = "users") -> SchemaMigrationRecord:
    return repository.insert(
        SchemaMigrationRecord(migration_name=name, table_name=table, definition=definition)
    )


class FailingQueue:
    def submit(self, kind, record_id):
        raise RuntimeError("broker unavailable")


# =========================================================================
# Data migrations
# =========================================================================


class TestDataCandidates:
    def test_claims_enqueued(self, engine, enqueue, events):
        record = enqueue()
        report = engine.run_scheduler()
        assert report.claimed == [(DATA, record.id)]
        assert report.executed == [(DATA, record.id)]
        assert report.outcome(record) == "progressed"
        assert engine.get(DATA, record.id).status == S.RUNNING
        assert [e.event_type for e in events[:2]] == [EventType.STARTED, EventType.RUN]

    def test_idle_running_record_takes_next_step(self, engine, enqueue, recorder):
        record = enqueue()
        engine.run_scheduler()
        report = engine.run_scheduler()
        assert report.claimed == []
        assert report.executed == [(DATA, record.id)]
        assert recorder.processed == [0, 1, 2, 3]

    def test_runs_to_success(self, engine, enqueue, run_until_idle):
        record = enqueue(5)
        assert run_until_idle() == 4
        loaded = engine.get(DATA, record.id)
        assert loaded.status == S.SUCCEEDED
        assert loaded.tick_count == 5

    def test_concurrency_limits_new_claims(self, engine, settings, enqueue):
        settings.max_migrations_per_pass = 5
        first, second = enqueue(5), enqueue(6)
        report = engine.run_scheduler()
        assert report.executed == [(DATA, first.id)]
        assert report.skipped == [(DATA, second.id)]

    def test_concurrency_allows_parallel_records(self, engine, settings, enqueue):
        settings.max_migrations_per_pass = 5
        settings.concurrency = 2
        first, second = enqueue(5), enqueue(6)
        assert engine.run_scheduler().ids("executed", DATA) == [first.id, second.id]

    def test_max_migrations_per_pass(self, engine, settings, enqueue):
        settings.concurrency = 5
        first, second = enqueue(5), enqueue(6)
        report = engine.run_scheduler()
        assert report.executed == [(DATA, first.id)]
        assert engine.get(DATA, second.id).status == S.ENQUEUED

    def test_kind_filter(self, engine, enqueue):
        enqueue()
        assert engine.run_scheduler(kind=SCHEMA).idle

    def test_shard_filter(self, engine, enqueue):
        enqueue()
        assert engine.run_scheduler(shard="shard_two").idle


class TestErroredRecords:
    def test_waits_for_backoff(self, engine, config, enqueue, repository, clock, events):
        config.retry_policy = RetryPolicy(backoff=ConstantBackoff(delay=60))
        record = repository.claim(enqueue())
        repository.increment_attempts(record, error_class="RuntimeError", error_message="boom")

        assert engine.run_scheduler().idle

        clock.advance(60)
        report = engine.run_scheduler()
        assert report.executed == [(DATA, record.id)]
        retried = [e for e in events if e.event_type == EventType.RETRIED]
        assert retried[0].payload == {"attempts": 1}

    def test_failed_not_retried_by_default(self, engine, enqueue, repository):
        record = repository.claim(enqueue())
        repository.transition(record, S.FAILED)
        assert engine.run_scheduler().idle

    def test_auto_retry_failed(self, engine, config, enqueue, repository, clock, events):
        config.retry_policy = RetryPolicy(auto_retry_failed=True, failed_retry_delay=30)
        record = repository.claim(enqueue())
        repository.transition(record, S.FAILED, finished_at=clock.now)

        assert engine.run_scheduler().idle

        clock.advance(30)
        report = engine.run_scheduler()
        assert report.requeued == [(DATA, record.id)]
        assert report.claimed == [(DATA, record.id)]
        assert engine.get(DATA, record.id).attempts == 0
        retried = [e for e in events if e.event_type == EventType.RETRIED]
        assert retried[0].payload == {"automatic": True}


class TestStopRequests:
    def test_pausing_record_is_finalized(self, engine, enqueue):
        record = enqueue()
        engine.run_scheduler()
        engine.pause(engine.get(DATA, record.id))
        report = engine.run_scheduler()
        assert report.outcome(record) == "paused"
        assert engine.get(DATA, record.id).status == S.PAUSED
        assert engine.run_scheduler().idle

    def test_resumed_record_continues_from_cursor(self, engine, enqueue, recorder):
        record = enqueue()
        engine.run_scheduler()
        engine.pause(engine.get(DATA, record.id))
        engine.run_scheduler()
        engine.resume(engine.get(DATA, record.id))

        report = engine.run_scheduler()
        assert report.claimed == [(DATA, record.id)]
        assert recorder.processed == [0, 1, 2, 3]

    def test_cancelled_record_stops(self, engine, enqueue):
        record = enqueue()
        engine.run_scheduler()
        engine.cancel(engine.get(DATA, record.id))
        engine.run_scheduler()
        assert engine.get(DATA, record.id).status == S.CANCELLED
        assert engine.run_scheduler().idle


# =========================================================================
# Exclusivity
# =========================================================================


class TestLocking:
    def test_locked_record_skipped(self, engine, enqueue, conn, clock):
        record = enqueue()
        other_worker = AdvisoryLock(conn, SQLiteDialect(), record.resource_key, clock=clock)
        assert other_worker.try_lock()

        report = engine.run_scheduler()
        assert report.skipped == [(DATA, record.id)]
        assert engine.get(DATA, record.id).status == S.ENQUEUED

        other_worker.unlock()
        assert engine.run_scheduler().executed == [(DATA, record.id)]

    def test_lock_released_after_step(self, engine, enqueue, conn, clock):
        record = enqueue()
        engine.run_scheduler()
        assert not AdvisoryLock(conn, SQLiteDialect(), record.resource_key, clock=clock).is_locked()

    def test_claim_lost_to_status_change(self, engine, enqueue, repository):
        record = repository.claim(enqueue())
        stale = repository.reload(record)
        repository.pause(record)
        with pytest.raises(StaleRecordError):
            engine.scheduler._claim(stale, PassReport())


class TestSchemaCandidates:
    def test_same_table_serialized(self, engine, settings, repository, conn):
        settings.max_migrations_per_pass = 5
        first = _schema(repository, "index_users_on_email", "CREATE INDEX index_users_on_email ON users (email)")
        second = _schema(repository, "index_users_on_name", "CREATE INDEX index_users_on_name ON users (name)")

        report = engine.run_scheduler(kind=SCHEMA)
        assert report.executed == [(SCHEMA, first.id)]
        assert report.skipped == [(SCHEMA, second.id)]

        report = engine.run_scheduler(kind=SCHEMA)
        assert report.executed == [(SCHEMA, second.id)]

    def test_different_tables_in_one_pass(self, engine, settings, repository):
        settings.max_migrations_per_pass = 5
        first = _schema(repository, "index_users_on_email", "CREATE INDEX index_users_on_email ON users (email)")
        second = _schema(
            repository, "index_posts_on_user_id", "CREATE INDEX index_posts_on_user_id ON posts (user_id)", "posts"
        )
        assert engine.run_scheduler(kind=SCHEMA).ids("executed", SCHEMA) == [first.id, second.id]

    def test_running_statement_blocks_table(self, engine, repository):
        running = repository.claim(
            _schema(repository, "index_users_on_email", "CREATE INDEX index_users_on_email ON users (email)")
        )
        waiting = _schema(repository, "index_users_on_name", "CREATE INDEX index_users_on_name ON users (name)")

        report = engine.run_scheduler(kind=SCHEMA)
        assert report.executed == []
        assert report.skipped == [(SCHEMA, waiting.id)]
        assert engine.get(SCHEMA, running.id).status == S.RUNNING

    def test_errored_statement_does_not_block_table(self, engine, config, repository):
        config.retry_policy = RetryPolicy(backoff=ConstantBackoff(delay=60))
        errored = repository.claim(
            _schema(repository, "index_users_on_email", "CREATE INDEX index_users_on_email ON users (email)")
        )
        repository.increment_attempts(errored, error_class="RuntimeError", error_message="boom")
        waiting = _schema(repository, "index_users_on_name", "CREATE INDEX index_users_on_name ON users (name)")

        report = engine.run_scheduler(kind=SCHEMA)
        assert report.executed == [(SCHEMA, waiting.id)]
        assert engine.get(SCHEMA, errored.id).status == S.RUNNING

    def test_stuck_statement_is_picked_up(self, engine, repository, clock):
        record = repository.claim(
            _schema(repository, "index_users_on_email", "CREATE INDEX index_users_on_email ON users (email)")
        )
        assert engine.run_scheduler(kind=SCHEMA).idle

        clock.advance(3600 + 300 + 1)
        report = engine.run_scheduler(kind=SCHEMA)
        assert report.executed == [(SCHEMA, record.id)]
        assert engine.get(SCHEMA, record.id).status == S.SUCCEEDED


# =========================================================================
# Queue hand-off
# =========================================================================


class TestQueueHandOff:
    def test_submit_failure_skips(self, config, repository, engine, enqueue):
        scheduler = Scheduler(config, repository, engine.runner, queue=FailingQueue())
        record = enqueue()
        report = scheduler.run()
        assert report.skipped == [(DATA, record.id)]
        assert report.claimed == [(DATA, record.id)]

    def test_submit_failure_raised_inline(self, config, settings, repository, engine):
        repository.insert(DataMigrationRecord(migration_name="CollectNumbers", arguments=[5]))
        settings.run_inline = True
        scheduler = Scheduler(config, repository, engine.runner, queue=FailingQueue())
        with pytest.raises(RuntimeError, match="broker unavailable"):
            scheduler.run()


class TestPassReport:
    def test_idle(self):
        assert PassReport().idle
        assert not PassReport(executed=[(DATA, 1)]).idle
        assert not PassReport(requeued=[(DATA, 1)]).idle
        assert PassReport(skipped=[(DATA, 1)]).idle

    def test_ids(self):
        report = PassReport(executed=[(DATA, 1), (SCHEMA, 2), (DATA, 3)])
        assert report.ids("executed", DATA) == [1, 3]

    def test_to_dict(self):
        report = PassReport(claimed=[(DATA, 1)], executed=[(DATA, 1)], outcomes={(DATA, 1): "progressed"})
        assert report.to_dict() == {
            "claimed": ["data:1"],
            "executed": ["data:1"],
            "skipped": [],
            "requeued": [],
            "outcomes": {"data:1": "progressed"},
        }
