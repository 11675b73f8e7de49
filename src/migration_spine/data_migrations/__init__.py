"""Registry of data migrations.

A data migration is registered under a name with a factory. The factory
receives the record's ``arguments`` and returns an object exposing one of
the capabilities in :mod:`migration_spine.batching`. The registry is an
explicit object held by :class:`~migration_spine.config.EngineConfig`.

Example:
    >>> registry = DataMigrationRegistry.with_builtins()
    >>> @registry.register("BackfillProjectIssuesCount")
    ... class BackfillProjectIssuesCount(KeysetRowRange):
    ...     def __init__(self):
    ...         super().__init__("projects")
    ...     def apply(self, context, range_sql, params):
    ...         context.conn.execute(f"UPDATE projects SET issues_count = 0 WHERE {range_sql}", params)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from migration_spine.batching import IterableCollection, RowRange
from migration_spine.errors import ExecutionError, UnknownDataMigrationError

Factory = Callable[..., Any]


class DataMigrationRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, Factory] = {}

    @classmethod
    def with_builtins(cls) -> DataMigrationRegistry:
        from migration_spine.data_migrations.builtins import BUILTINS

        registry = cls()
        for name, factory in BUILTINS.items():
            registry.register(name, factory)
        return registry

    def register(self, name: str, factory: Factory | None = None) -> Any:
        """Register ``factory`` under ``name``; usable as a decorator."""
        if factory is None:
            def decorator(func: Factory) -> Factory:
                self._factories[name] = func
                return func
            return decorator
        self._factories[name] = factory
        return factory

    def named(self, name: str) -> Factory:
        try:
            return self._factories[name]
        except KeyError:
            raise UnknownDataMigrationError(name) from None

    def build(self, name: str, arguments: list[Any] | None = None) -> Any:
        """Instantiate the capability for a record."""
        capability = self.named(name)(*(arguments or []))
        if not isinstance(capability, (RowRange, IterableCollection)):
            raise ExecutionError(
                f"data migration {name!r} does not expose a collection or a row range"
            )
        return capability

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories


__all__ = ["DataMigrationRegistry"]
