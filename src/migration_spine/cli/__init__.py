"""
CLI layer for migration-spine.

A Typer application whose commands delegate to
:class:`~migration_spine.engine.MigrationEngine`. This package handles only
terminal transport: argument parsing, coloured output and table formatting.

Entry point::

    migration-spine --help
"""

from migration_spine.cli.app import app, main

__all__ = ["app", "main"]
