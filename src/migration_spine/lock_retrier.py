"""Lock-timeout retries for foreground DDL.

A DDL statement that needs an ``ACCESS EXCLUSIVE`` lock queues behind long
transactions and blocks every query arriving after it. Running it with a
short ``lock_timeout`` and retrying on timeout keeps that queue short.

The schema Step Runner runs every statement through the configured retrier;
``NullLockRetrier`` (the default) runs it once with no lock timeout.

Example:
    >>> retrier = ExponentialLockRetrier(
    ...     attempts=30, base_delay=0.01, max_delay=60, lock_timeout=0.2
    ... )
    >>> retrier.with_lock_retries(conn, dialect, lambda: conn.execute(ddl))
"""

from __future__ import annotations

import logging
import math
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar

from migration_spine.dialect import Dialect

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockRetrier(ABC):
    """Runs a block, retrying it when it times out waiting for a lock."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    @property
    @abstractmethod
    def attempts(self) -> int:
        """Number of retries after the first try."""
        ...

    @abstractmethod
    def lock_timeout(self, attempt: int) -> float | None:
        """Lock timeout in seconds for a 1-based attempt (None = unchanged)."""
        ...

    @abstractmethod
    def delay(self, attempt: int) -> float:
        """Seconds to sleep after a timed-out 1-based attempt."""
        ...

    def with_lock_retries(self, conn: Any, dialect: Dialect, block: Callable[[], T]) -> T:
        current_attempt = 0
        while True:
            current_attempt += 1
            try:
                timeout = self.lock_timeout(current_attempt)
                if timeout is None:
                    return block()
                return self._with_lock_timeout(conn, dialect, timeout, block)
            except Exception as e:
                if not dialect.is_lock_timeout_error(e) or current_attempt > self.attempts:
                    raise
                conn.rollback()
                current_delay = self.delay(current_attempt)
                logger.warning(
                    f"Lock timeout. Retrying in {current_delay} seconds "
                    f"(attempt {current_attempt}/{self.attempts})"
                )
                self._sleep(current_delay)

    def _with_lock_timeout(self, conn: Any, dialect: Dialect, timeout: float, block: Callable[[], T]) -> T:
        show_sql = dialect.show_lock_timeout_sql()
        if show_sql is None:
            return block()
        previous = conn.execute(show_sql).fetchone()[0]
        conn.execute(dialect.set_lock_timeout_sql(math.ceil(timeout * 1000)))
        try:
            return block()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.execute(dialect.set_lock_timeout_sql(previous))


class ConstantLockRetrier(LockRetrier):
    """Constant delay and lock timeout for every try."""

    def __init__(
        self,
        attempts: int,
        delay: float,
        lock_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep)
        self._attempts = attempts
        self._delay = delay
        self._lock_timeout = lock_timeout

    @property
    def attempts(self) -> int:
        return self._attempts

    def lock_timeout(self, attempt: int) -> float | None:
        return self._lock_timeout

    def delay(self, attempt: int) -> float:
        return self._delay


class ExponentialLockRetrier(LockRetrier):
    """Exponential delay with full jitter, constant lock timeout."""

    def __init__(
        self,
        attempts: int,
        base_delay: float,
        max_delay: float,
        lock_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep)
        self._attempts = attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._lock_timeout = lock_timeout

    @property
    def attempts(self) -> int:
        return self._attempts

    def lock_timeout(self, attempt: int) -> float | None:
        return self._lock_timeout

    def delay(self, attempt: int) -> float:
        return random.random() * min(self._max_delay, self._base_delay * 2 ** (attempt - 1))


class NullLockRetrier(LockRetrier):
    """Runs the block once."""

    @property
    def attempts(self) -> int:
        return 0

    def lock_timeout(self, attempt: int) -> float | None:
        return None

    def delay(self, attempt: int) -> float:
        return 0.0

    def with_lock_retries(self, conn: Any, dialect: Dialect, block: Callable[[], T]) -> T:
        return block()


__all__ = [
    "LockRetrier",
    "ConstantLockRetrier",
    "ExponentialLockRetrier",
    "NullLockRetrier",
]
