"""Backtrace capture and cleaning for persisted step failures."""

from __future__ import annotations

import re
import sysconfig
import traceback
from collections.abc import Iterable


def format_backtrace(error: BaseException) -> list[str]:
    """One ``path:line:in `function``` entry per frame, innermost last."""
    return [
        f"{frame.filename}:{frame.lineno}:in `{frame.name}`"
        for frame in traceback.extract_tb(error.__traceback__)
    ]


class BacktraceCleaner:
    """Drops frames matching any silencer pattern.

    The default silencers remove frames from the standard library,
    installed packages and migration-spine itself, leaving the user's
    migration code and the database driver call that failed.
    """

    def __init__(self, silencers: Iterable[str] | None = None) -> None:
        if silencers is None:
            silencers = self.default_silencers()
        self._silencers = [re.compile(pattern) for pattern in silencers]

    @staticmethod
    def default_silencers() -> list[str]:
        stdlib = sysconfig.get_paths()["stdlib"]
        return [
            re.escape(stdlib) + r"/(?!site-packages)",
            r"/migration_spine/",
        ]

    def add_silencer(self, pattern: str) -> None:
        self._silencers.append(re.compile(pattern))

    def clean(self, lines: list[str]) -> list[str]:
        cleaned = [
            line for line in lines
            if not any(pattern.search(line) for pattern in self._silencers)
        ]
        # Never persist an empty backtrace for a real failure.
        return cleaned or lines[-1:]


class NullBacktraceCleaner(BacktraceCleaner):
    def __init__(self) -> None:
        super().__init__(silencers=[])


__all__ = ["format_backtrace", "BacktraceCleaner", "NullBacktraceCleaner"]
