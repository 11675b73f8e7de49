"""
Root Typer application for the migration-spine CLI.
"""

from __future__ import annotations

import sys

import typer
from typer import Typer

from migration_spine.cli import migrations
from migration_spine.logging import configure_logging
from migration_spine.settings import get_settings

app = Typer(
    name="migration-spine",
    help="migration-spine: run and operate background data and schema migrations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from migration_spine import __version__

        typer.echo(f"migration-spine {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """migration-spine CLI: enqueue state, scheduler passes and operator actions."""


# ── Commands ─────────────────────────────────────────────────────────────

app.command("init-db")(migrations.init_db)
app.command("run")(migrations.run)
app.command("list")(migrations.list_migrations)
app.command("show")(migrations.show)
app.command("retry")(migrations.retry)
app.command("pause")(migrations.pause)
app.command("resume")(migrations.resume)
app.command("cancel")(migrations.cancel)


def main() -> None:
    """Console script entry: configure logging to stderr, then run the app."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json, stream=sys.stderr)
    app()


if __name__ == "__main__":
    main()
