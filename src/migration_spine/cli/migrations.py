"""
CLI: migration commands (``init-db``, ``run``, ``list``, ``show`` and the
operator actions).
"""

from __future__ import annotations

import typer

from migration_spine.cli.utils import (
    DATABASE_HELP,
    ENGINE_HELP,
    console,
    handle_errors,
    make_engine,
    output_dict,
    output_record,
    output_records,
    parse_kind,
    parse_statuses,
)
from migration_spine.models import MigrationKind
from migration_spine.periodic import PeriodicRunner


def init_db(
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
) -> None:
    """Create the migration tables (idempotent)."""
    with handle_errors():
        engine = make_engine(database, engine_factory)
        engine.create_tables()
    console.print("[green]✓[/green] Migration tables ready")


def run(
    shard: str | None = typer.Option(None, "--shard", help="Only migrations on this shard."),
    kind: str | None = typer.Option(None, "--kind", "-k", help="data or schema (default: both)."),
    every: float | None = typer.Option(
        None, "--every", help="Keep running a pass every SECONDS until interrupted."
    ),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one Scheduler pass, or one every ``--every`` seconds."""
    migration_kind = parse_kind(kind)
    with handle_errors():
        engine = make_engine(database, engine_factory)
        if every is None:
            report = engine.run_scheduler(shard=shard, kind=migration_kind)
            output_dict(report.to_dict(), as_json=json_out, title="Scheduler pass")
            return

        runner = PeriodicRunner(
            lambda: engine.run_scheduler(shard=shard, kind=migration_kind),
            interval_seconds=every,
        )
        console.print(f"Running a scheduler pass every {every}s (Ctrl+C to stop)")
        runner.start()
        try:
            runner.wait()
        except KeyboardInterrupt:
            console.print("Stopping...")
        finally:
            runner.stop()
        output_dict(runner.health(), as_json=json_out, title="Periodic runner")


def list_migrations(
    kind: str | None = typer.Option(None, "--kind", "-k", help="data or schema (default: both)."),
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Filter by status (repeatable)."),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List top-level migrations."""
    migration_kind = parse_kind(kind)
    statuses = parse_statuses(status)
    with handle_errors():
        engine = make_engine(database, engine_factory)
        kinds = [migration_kind] if migration_kind else list(MigrationKind)
        records = [record for k in kinds for record in engine.list(k, statuses)]
        output_records(engine, records, as_json=json_out, title="Migrations")


def show(
    kind: str = typer.Argument(..., help="data or schema"),
    record_id: int = typer.Argument(..., help="Migration id"),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one migration with its error, progress and children."""
    migration_kind = parse_kind(kind)
    with handle_errors():
        engine = make_engine(database, engine_factory)
        output_record(engine, engine.get(migration_kind, record_id), as_json=json_out)


def retry(
    kind: str = typer.Argument(..., help="data or schema"),
    record_id: int = typer.Argument(..., help="Migration id"),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
) -> None:
    """Requeue a failed migration with its attempts and cursor reset."""
    migration_kind = parse_kind(kind)
    with handle_errors():
        engine = make_engine(database, engine_factory)
        engine.retry(engine.get(migration_kind, record_id))
    console.print(f"[green]✓[/green] {migration_kind.value} migration {record_id} enqueued")


def _request(action: str, kind: str, record_id: int, database: str | None, engine_factory: str | None) -> None:
    migration_kind = parse_kind(kind)
    with handle_errors():
        engine = make_engine(database, engine_factory)
        record = engine.get(migration_kind, record_id)
        count = getattr(engine, action)(record)
    console.print(f"[green]✓[/green] {action} requested for {count} migration(s)")


def pause(
    kind: str = typer.Argument(..., help="data or schema"),
    record_id: int = typer.Argument(..., help="Migration id"),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
) -> None:
    """Ask a running migration to pause at its next step boundary."""
    _request("pause", kind, record_id, database, engine_factory)


def resume(
    kind: str = typer.Argument(..., help="data or schema"),
    record_id: int = typer.Argument(..., help="Migration id"),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
) -> None:
    """Requeue a paused migration."""
    _request("resume", kind, record_id, database, engine_factory)


def cancel(
    kind: str = typer.Argument(..., help="data or schema"),
    record_id: int = typer.Argument(..., help="Migration id"),
    database: str | None = typer.Option(None, "--database", "-d", help=DATABASE_HELP),
    engine_factory: str | None = typer.Option(None, "--engine", help=ENGINE_HELP),
) -> None:
    """Stop a migration for good. A running one stops at its next step boundary."""
    _request("cancel", kind, record_id, database, engine_factory)
