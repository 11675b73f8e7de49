"""Backoff strategies and the retry policy for errored migration records.

A step that raises leaves its record ``running`` with the error recorded and
``attempts`` incremented. The Scheduler considers it again once the backoff
delay for that attempt has elapsed. ``auto_retry_failed`` additionally lets
the Scheduler's retry pass requeue records that reached ``failed``.

Example:
    >>> from migration_spine.retry import ExponentialBackoff, RetryPolicy
    >>> policy = RetryPolicy(backoff=ExponentialBackoff(base_delay=5, max_delay=300))
    >>> policy.backoff.next_delay(0), policy.backoff.next_delay(3)
    (5.0, 40.0)
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from migration_spine.models import ACTIVE_STATUSES, MigrationRecord, MigrationStatus, SchemaMigrationRecord
from migration_spine.settings import MigrationSettings


class RetryStrategy(ABC):
    """Abstract base for backoff strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)
        return float(delay)


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class NoBackoff(RetryStrategy):
    """Retry on the very next pass."""

    def next_delay(self, attempt: int) -> float:
        return 0.0


@dataclass
class RetryPolicy:
    """When errored and failed records become eligible again.

    Attributes:
        backoff: Delay before an errored record is stepped again
        auto_retry_failed: Requeue ``failed`` records automatically
        failed_retry_delay: Seconds a record stays ``failed`` before auto retry
    """

    backoff: RetryStrategy = field(default_factory=NoBackoff)
    auto_retry_failed: bool = False
    failed_retry_delay: float = 0.0

    def retry_at(self, record: MigrationRecord) -> datetime | None:
        """Earliest time an errored record may run again (None = now)."""
        if not record.errored or record.updated_at is None:
            return None
        delay = self.backoff.next_delay(max(record.attempts - 1, 0))
        return record.updated_at + timedelta(seconds=delay)

    def is_due(self, record: MigrationRecord, now: datetime) -> bool:
        """Whether an errored record's backoff has elapsed."""
        retry_at = self.retry_at(record)
        return retry_at is None or retry_at <= now

    def should_auto_retry(self, record: MigrationRecord, now: datetime) -> bool:
        """Whether the retry pass requeues this failed record."""
        if not self.auto_retry_failed or record.status != MigrationStatus.FAILED:
            return False
        finished_at = record.finished_at or record.updated_at
        if finished_at is None:
            return True
        return finished_at + timedelta(seconds=self.failed_retry_delay) <= now


def stuck_threshold(record: MigrationRecord, settings: MigrationSettings) -> float:
    """Seconds without a heartbeat after which ``record`` counts as stuck.

    A schema statement may legitimately run for its whole statement
    timeout, so its threshold adds that on top of the stuck timeout.
    """
    if isinstance(record, SchemaMigrationRecord):
        statement_timeout = record.statement_timeout or settings.statement_timeout_seconds or 0
        return statement_timeout + settings.stuck_timeout_seconds
    return settings.stuck_timeout_seconds


def is_stuck(record: MigrationRecord, now: datetime, settings: MigrationSettings) -> bool:
    if record.status not in ACTIVE_STATUSES or record.updated_at is None:
        return False
    return record.updated_at + timedelta(seconds=stuck_threshold(record, settings)) < now


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "NoBackoff",
    "RetryPolicy",
    "stuck_threshold",
    "is_stuck",
]
