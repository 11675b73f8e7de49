"""Environment-driven settings for migration-spine.

Every field can be set through an environment variable prefixed with
``MIGRATION_SPINE_`` (``MIGRATION_SPINE_STUCK_TIMEOUT_SECONDS=600``) or a
``.env`` file. Settings hold plain values only; callables (throttler, error
handler, queue) are attached by :class:`~migration_spine.config.EngineConfig`.

Examples:
    >>> from migration_spine.settings import MigrationSettings
    >>> settings = MigrationSettings(run_inline=True, batch_size=500)
    >>> settings.batch_size
    500
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MigrationSettings(BaseSettings):
    """Engine settings.

    Fields
    ──────
    database_url              : Database holding migration records
    data_max_attempts         : Failed steps before a data migration is failed
    schema_max_attempts       : Failed runs before a schema migration is failed
    stuck_timeout_seconds     : Liveness timeout for running records
    statement_timeout_seconds : Default statement timeout for schema migrations
    iteration_pause_seconds   : Sleep after each data migration step
    batch_size                : Items or rows per data migration step
    concurrency               : Data migrations running at the same time
    max_migrations_per_pass   : Records stepped per Scheduler pass and kind
    run_inline                : Re-raise step errors to the caller
    """

    model_config = SettingsConfigDict(
        env_prefix="MIGRATION_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = "sqlite:///migration_spine.db"

    # ── Attempts and liveness ────────────────────────────────────
    data_max_attempts: int = Field(default=5, ge=1)
    schema_max_attempts: int = Field(default=5, ge=1)
    stuck_timeout_seconds: float = Field(default=300.0, gt=0)
    statement_timeout_seconds: float | None = Field(default=3600.0, gt=0)

    # ── Data migration steps ─────────────────────────────────────
    iteration_pause_seconds: float = Field(default=0.0, ge=0)
    batch_size: int = Field(default=1000, ge=1)

    # ── Scheduling ───────────────────────────────────────────────
    concurrency: int = Field(default=1, ge=1)
    max_migrations_per_pass: int = Field(default=1, ge=1)
    scheduler_interval_seconds: float = Field(default=60.0, gt=0)
    run_inline: bool = False

    # ── Retry ────────────────────────────────────────────────────
    auto_retry_failed: bool = False
    retry_base_delay_seconds: float = Field(default=0.0, ge=0)
    retry_max_delay_seconds: float = Field(default=300.0, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None


@lru_cache
def get_settings() -> MigrationSettings:
    """Cached settings read from the environment."""
    return MigrationSettings()


__all__ = ["MigrationSettings", "get_settings"]
