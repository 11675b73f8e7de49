"""
End-to-end scenarios: several Scheduler passes, sharded targets and
concurrent engines sharing one migration database.
"""

from __future__ import annotations

import pytest

from migration_spine.config import EngineConfig
from migration_spine.connection import ConnectionRegistry, SqliteConnection
from migration_spine.engine import MigrationEngine
from migration_spine.events import EventType
from migration_spine.models import MigrationKind, MigrationStatus
from migration_spine.retry import RetryPolicy

SHARDS = ["shard_one", "shard_two", "shard_three"]

USERS_DDL = "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT, admin INTEGER)"


def shard_connection() -> SqliteConnection:
    conn = SqliteConnection()
    create_users(conn)
    conn.executemany("INSERT INTO users (id, email, admin) VALUES (?, ?, 0)", [(i, f"u{i}@x.io") for i in range(1, 4)])
    conn.commit()
    return conn


def create_users(conn) -> None:
    conn.execute(USERS_DDL)
    conn.commit()


def drop_users(conn) -> None:
    conn.execute("DROP TABLE users")
    conn.commit()


def has_index(conn, name: str) -> bool:
    return conn.execute("SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (name,)).fetchone() is not None


def statuses(records) -> list[MigrationStatus]:
    return [record.status for record in records]


@pytest.fixture()
def shard_conns() -> dict[str, SqliteConnection]:
    return {shard: shard_connection() for shard in SHARDS}


@pytest.fixture()
def sharded_engine(conn, clock, registry, recorder, settings, shard_conns) -> MigrationEngine:
    """Engine whose ``sharded`` connection class spans three databases."""
    connections = ConnectionRegistry.single(conn)
    for shard, shard_conn in shard_conns.items():
        connections.register("sharded", shard, lambda shard_conn=shard_conn: shard_conn)
    return MigrationEngine(
        EngineConfig(
            settings=settings,
            connections=connections,
            database=conn,
            data_migrations=registry,
            error_handler=recorder.error_handler,
            clock=clock,
            sleep=recorder.sleeps.append,
        )
    )


@pytest.fixture()
def sharded_events(sharded_engine) -> list:
    received: list = []
    sharded_engine.events.subscribe("*", received.append)
    return received


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    def test_pause_resume_cancel_walk(self, engine, events, recorder):
        [record] = engine.enqueue_data_migration("CollectNumbers", 10)

        engine.run_scheduler()
        assert engine.pause(engine.get("data", record.id)) == 1
        engine.run_scheduler()
        assert engine.get("data", record.id).status == MigrationStatus.PAUSED

        assert engine.run_scheduler().idle
        assert recorder.processed == [0, 1]

        assert engine.resume(engine.get("data", record.id)) == 1
        engine.run_scheduler()
        assert engine.get("data", record.id).status == MigrationStatus.RUNNING
        assert recorder.processed == [0, 1, 2, 3]

        assert engine.cancel(engine.get("data", record.id)) == 1
        engine.run_scheduler()
        final = engine.get("data", record.id)
        assert final.status == MigrationStatus.CANCELLED
        assert final.cursor == 4
        assert [e.event_type for e in events].count(EventType.STARTED) == 2

    def test_retry_resets_and_reruns(self, engine, recorder, run_until_idle):
        [record] = engine.enqueue_data_migration("ExplodingNumbers", 6, 3)
        run_until_idle()

        failed = engine.get("data", record.id)
        assert failed.status == MigrationStatus.FAILED
        assert failed.attempts == 3
        assert failed.cursor == 2
        assert len(recorder.errors) == 1

        engine.retry(failed)
        reset = engine.get("data", record.id)
        assert reset.status == MigrationStatus.ENQUEUED
        assert (reset.attempts, reset.cursor, reset.error_class, reset.backtrace) == (0, None, None, None)

        run_until_idle()
        assert engine.get("data", record.id).status == MigrationStatus.FAILED
        assert len(recorder.errors) == 2
        assert recorder.processed[:2] == [0, 1]


# =============================================================================
# Resumability
# =============================================================================


class TestResume:
    def test_new_engine_continues_from_cursor(self, engine, config, recorder):
        [record] = engine.enqueue_data_migration("CollectNumbers", 7)
        engine.run_scheduler()
        engine.run_scheduler()
        assert recorder.processed == [0, 1, 2, 3]

        # A different worker process picks the record up.
        restarted = MigrationEngine(config)
        while not restarted.run_scheduler().idle:
            pass

        assert recorder.processed == list(range(7))
        done = restarted.get("data", record.id)
        assert done.status == MigrationStatus.SUCCEEDED
        assert done.progress == 100

    def test_throttle_then_progress(self, engine, config, recorder):
        [record] = engine.enqueue_data_migration("CollectNumbers", 4)
        config.throttler = lambda: True

        report = engine.run_scheduler()
        assert report.outcome(record) == "throttled"
        assert recorder.processed == []
        assert engine.get("data", record.id).status == MigrationStatus.RUNNING

        config.throttler = lambda: False
        report = engine.run_scheduler()
        assert report.outcome(record) == "progressed"
        assert recorder.processed == [0, 1]


# =============================================================================
# Exclusivity
# =============================================================================


class TestExclusivity:
    def test_second_engine_skips_record_mid_step(self, conn, clock, registry, settings, engine, config, recorder):
        other = MigrationEngine(
            EngineConfig(
                settings=settings,
                connections=ConnectionRegistry.single(conn),
                data_migrations=registry,
                clock=clock,
                sleep=lambda seconds: None,
            )
        )
        [record] = engine.enqueue_data_migration("CollectNumbers", 4)
        reports = []

        def run_other_during_step() -> bool:
            reports.append(other.run_scheduler())
            return False

        config.throttler = run_other_during_step
        engine.run_scheduler()

        [other_report] = reports
        assert other_report.ids("skipped", MigrationKind.DATA) == [record.id]
        assert other_report.executed == []
        assert recorder.processed == [0, 1]

        config.throttler = lambda: False
        assert other.run_scheduler().ids("executed", MigrationKind.DATA) == [record.id]
        assert recorder.processed == [0, 1, 2, 3]

    def test_same_table_statements_serialized(self, engine, conn, settings):
        settings.max_migrations_per_pass = 5
        first = engine.enqueue_schema_migration("index_users_on_email", "users", "CREATE INDEX index_users_on_email ON users (email)")
        second = engine.enqueue_schema_migration("index_users_on_name", "users", "CREATE INDEX index_users_on_name ON users (name)")
        other_table = engine.enqueue_schema_migration("index_posts_on_user_id", "posts", "CREATE INDEX index_posts_on_user_id ON posts (user_id)")

        report = engine.run_scheduler()
        assert report.ids("executed", MigrationKind.SCHEMA) == [first.id, other_table.id]
        assert report.ids("skipped", MigrationKind.SCHEMA) == [second.id]

        report = engine.run_scheduler()
        assert report.ids("executed", MigrationKind.SCHEMA) == [second.id]
        assert all(has_index(conn, name) for name in ("index_users_on_email", "index_users_on_name", "index_posts_on_user_id"))

    def test_stuck_schema_record_picked_up(self, engine, repository, clock, conn):
        record = engine.enqueue_schema_migration(
            "index_users_on_email", "users", "CREATE INDEX index_users_on_email ON users (email)", statement_timeout=60
        )
        # A worker claimed it, then died before reporting back.
        repository.claim(record)

        assert engine.run_scheduler().idle
        clock.advance(359)
        assert engine.run_scheduler().idle
        clock.advance(2)

        report = engine.run_scheduler()
        assert report.outcome(record) == "succeeded"
        assert has_index(conn, "index_users_on_email")


# =============================================================================
# Failure handling
# =============================================================================


class TestFailures:
    def test_invalid_ddl_exhausts_attempts(self, engine, events, recorder, run_until_idle):
        record = engine.enqueue_schema_migration("broken", "users", "CREATE INDEX broken ON users (no_such_column)")

        run_until_idle()

        failed = engine.get("schema", record.id)
        assert failed.status == MigrationStatus.FAILED
        assert failed.attempts == 3
        assert failed.error_class == "sqlite3.OperationalError"
        assert failed.backtrace
        assert len(recorder.errors) == 1
        error, errored_record = recorder.errors[0]
        assert "no_such_column" in str(error)
        assert errored_record.id == record.id
        assert [e.event_type for e in events].count(EventType.FAILED) == 1
        assert [e.event_type for e in events].count(EventType.RETRIED) == 2

    def test_automatic_retry_of_failed(self, engine, config, clock, run_until_idle):
        [record] = engine.enqueue_data_migration("ExplodingNumbers", 4, 2)
        run_until_idle()
        assert engine.get("data", record.id).status == MigrationStatus.FAILED

        config.retry_policy = RetryPolicy(auto_retry_failed=True, failed_retry_delay=60)

        assert engine.run_scheduler().requeued == []
        clock.advance(61)
        report = engine.run_scheduler()
        assert report.ids("requeued", MigrationKind.DATA) == [record.id]
        assert report.ids("claimed", MigrationKind.DATA) == [record.id]


# =============================================================================
# Sharding
# =============================================================================


class TestShardedSchemaMigration:
    DEFINITION = "CREATE INDEX index_users_on_email ON users (email)"

    def test_one_child_per_pass(self, sharded_engine, sharded_events, shard_conns):
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )
        children = sharded_engine.children(parent)
        assert [child.shard for child in children] == SHARDS
        assert parent.composite

        for expected in range(1, 4):
            report = sharded_engine.run_scheduler()
            assert len(report.ids("executed", MigrationKind.SCHEMA)) == 1
            built = [shard for shard, shard_conn in shard_conns.items() if has_index(shard_conn, "index_users_on_email")]
            assert built == SHARDS[:expected]

        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.SUCCEEDED
        assert statuses(sharded_engine.children(parent)) == [MigrationStatus.SUCCEEDED] * 3
        completed = [e.record.id for e in sharded_events if e.event_type == EventType.COMPLETED]
        assert completed[-1] == parent.id
        assert sharded_engine.run_scheduler().idle

    def test_parent_runs_with_first_child(self, sharded_engine):
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )
        sharded_engine.run_scheduler()
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.RUNNING
        assert sharded_engine.progress(sharded_engine.get("schema", parent.id)) == 33.33

    def test_failed_child_fails_parent_and_retry(self, sharded_engine, shard_conns, recorder):
        drop_users(shard_conns["shard_two"])
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )

        for _ in range(10):
            if sharded_engine.run_scheduler().idle:
                break

        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.FAILED
        assert statuses(sharded_engine.children(parent)) == [
            MigrationStatus.SUCCEEDED,
            MigrationStatus.FAILED,
            MigrationStatus.ENQUEUED,
        ]
        assert len(recorder.errors) == 1

        create_users(shard_conns["shard_two"])
        sharded_engine.retry(sharded_engine.get("schema", parent.id))
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.ENQUEUED

        for _ in range(10):
            if sharded_engine.run_scheduler().idle:
                break
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.SUCCEEDED

    def test_pause_composite(self, sharded_engine, shard_conns):
        drop_users(shard_conns["shard_two"])
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )
        sharded_engine.run_scheduler()
        sharded_engine.run_scheduler()
        second = sharded_engine.children(parent)[1]
        assert second.errored

        assert sharded_engine.pause(sharded_engine.get("schema", parent.id)) == 1
        sharded_engine.run_scheduler()
        assert sharded_engine.get("schema", second.id).status == MigrationStatus.PAUSED
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.RUNNING
        assert sharded_engine.run_scheduler().idle

        create_users(shard_conns["shard_two"])
        assert sharded_engine.resume(sharded_engine.get("schema", parent.id)) == 1
        sharded_engine.run_scheduler()
        sharded_engine.run_scheduler()
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.SUCCEEDED


    def test_cancel_composite(self, sharded_engine, sharded_events, shard_conns):
        drop_users(shard_conns["shard_two"])
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )
        sharded_engine.run_scheduler()
        sharded_engine.run_scheduler()
        second = sharded_engine.children(parent)[1]
        assert second.errored

        assert sharded_engine.cancel(sharded_engine.get("schema", parent.id)) == 2
        assert statuses(sharded_engine.children(parent)) == [
            MigrationStatus.SUCCEEDED,
            MigrationStatus.CANCELLING,
            MigrationStatus.CANCELLED,
        ]

        report = sharded_engine.run_scheduler()
        assert report.outcome(second) == "cancelled"
        final = sharded_engine.get("schema", parent.id)
        assert final.status == MigrationStatus.CANCELLED
        assert final.finished_at is not None
        assert statuses(sharded_engine.children(parent)) == [
            MigrationStatus.SUCCEEDED,
            MigrationStatus.CANCELLED,
            MigrationStatus.CANCELLED,
        ]
        assert not has_index(shard_conns["shard_three"], "index_users_on_email")
        assert parent.id not in [e.record.id for e in sharded_events if e.event_type == EventType.COMPLETED]
        assert sharded_engine.run_scheduler().idle

    def test_cancel_unstarted_composite(self, sharded_engine, shard_conns):
        parent = sharded_engine.enqueue_schema_migration(
            "index_users_on_email", "users", self.DEFINITION, connection_class_name="sharded"
        )

        assert sharded_engine.cancel(parent) == 3
        assert sharded_engine.get("schema", parent.id).status == MigrationStatus.CANCELLED
        assert statuses(sharded_engine.children(parent)) == [MigrationStatus.CANCELLED] * 3

        assert sharded_engine.run_scheduler().idle
        assert not any(has_index(shard_conn, "index_users_on_email") for shard_conn in shard_conns.values())


class TestShardedDataMigration:
    def test_one_record_per_shard(self, sharded_engine, shard_conns, settings):
        settings.concurrency = 3
        settings.max_migrations_per_pass = 3
        records = sharded_engine.enqueue_data_migration(
            "BackfillColumn", "users", {"admin": 1}, connection_class_name="sharded"
        )
        assert [record.shard for record in records] == SHARDS

        for _ in range(10):
            if sharded_engine.run_scheduler().idle:
                break

        assert statuses(sharded_engine.get("data", r.id) for r in records) == [MigrationStatus.SUCCEEDED] * 3
        for shard_conn in shard_conns.values():
            assert [row[0] for row in shard_conn.execute("SELECT admin FROM users")] == [1, 1, 1]

    def test_shard_filter(self, sharded_engine, settings):
        settings.concurrency = 3
        records = sharded_engine.enqueue_data_migration(
            "BackfillColumn", "users", {"admin": 1}, connection_class_name="sharded"
        )
        report = sharded_engine.run_scheduler(shard="shard_two")
        assert report.ids("claimed", MigrationKind.DATA) == [records[1].id]
