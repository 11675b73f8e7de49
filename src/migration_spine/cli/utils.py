"""
CLI utility helpers: engine construction and output formatting.
"""

from __future__ import annotations

import importlib
import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from migration_spine.config import EngineConfig
from migration_spine.engine import MigrationEngine
from migration_spine.errors import ConfigError, MigrationSpineError
from migration_spine.models import MigrationKind, MigrationRecord, MigrationStatus
from migration_spine.settings import MigrationSettings, get_settings

console = Console()
err_console = Console(stderr=True)

DATABASE_HELP = "Database URL or SQLite path (default: MIGRATION_SPINE_DATABASE_URL)."
ENGINE_HELP = "Engine factory as 'module:function', for custom registries and connections."


# ── Engine helper ────────────────────────────────────────────────────────


def load_factory(path: str) -> Any:
    """Import ``module:attribute``."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"Engine factory must look like 'module:function', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import {module_name!r}: {e}", cause=e) from e
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ConfigError(f"{module_name!r} has no attribute {attribute!r}") from None


def make_engine(database: str | None = None, engine: str | None = None) -> MigrationEngine:
    """Build the engine for a command from ``--engine`` or ``--database``."""
    if engine:
        result = load_factory(engine)()
        if not isinstance(result, MigrationEngine):
            raise ConfigError(f"{engine!r} returned {type(result).__name__}, not a MigrationEngine")
        return result
    settings = MigrationSettings(database_url=database) if database else get_settings()
    return MigrationEngine(EngineConfig(settings=settings))


def parse_kind(value: str | None) -> MigrationKind | None:
    if value is None:
        return None
    try:
        return MigrationKind(value.lower())
    except ValueError:
        raise typer.BadParameter(f"kind must be one of: {', '.join(k.value for k in MigrationKind)}") from None


def parse_statuses(values: list[str] | None) -> list[MigrationStatus] | None:
    if not values:
        return None
    try:
        return [MigrationStatus(value.lower()) for value in values]
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn engine errors into a red message and exit code 1."""
    try:
        yield
    except MigrationSpineError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def record_row(engine: MigrationEngine, record: MigrationRecord) -> dict[str, Any]:
    progress = engine.progress(record)
    return {
        "id": record.id,
        "kind": record.kind.value,
        "migration_name": record.migration_name,
        "shard": record.shard or "",
        "status": record.status.value,
        "attempts": f"{record.attempts}/{record.max_attempts}",
        "progress": "" if progress is None else f"{progress:.1f}%",
        "error": record.error_class or "",
    }


def output_records(
    engine: MigrationEngine,
    records: list[MigrationRecord],
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    if as_json:
        console.print_json(json.dumps([r.to_dict() for r in records], default=str))
        return
    if not records:
        console.print("[dim]No migrations.[/dim]")
        return
    rows = [record_row(engine, r) for r in records]
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(v) for v in row.values()))
    console.print(table)


def output_record(
    engine: MigrationEngine,
    record: MigrationRecord,
    *,
    as_json: bool = False,
) -> None:
    data = record.to_dict()
    data["progress"] = engine.progress(record)
    children = engine.children(record)
    if children:
        data["children"] = [child.to_dict() for child in children]

    if as_json:
        console.print_json(json.dumps(data, default=str))
        return

    console.print(f"[bold]{record.kind.value.title()} migration {record.id}[/bold]")
    for key, value in data.items():
        if key in ("children", "backtrace"):
            continue
        console.print(f"  [cyan]{key}[/cyan]: {value}")
    if record.backtrace:
        console.print("  [cyan]backtrace[/cyan]:")
        for line in record.backtrace:
            console.print(f"    {line}", markup=False)
    if children:
        output_records(engine, children, title="Children")


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for key, value in data.items():
        console.print(f"  [cyan]{key}[/cyan]: {value}")
