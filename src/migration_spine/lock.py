"""
Advisory exclusivity lock keyed by resource identity.

Guarantees that two Scheduler invocations, in the same process or in
different ones, never claim and execute work on the same resource at the
same time. Schema migrations lock their target table, data migrations lock
their own record.

Backends:
    - PostgreSQL: session advisory locks (``pg_try_advisory_lock``). A
      crashed worker's session ends and the lock goes with it.
    - Everything else: a row in ``migration_locks`` with a TTL. An expired
      row is deleted by the next acquirer, so a crashed worker blocks the
      resource for at most ``ttl_seconds``.

Each ``AdvisoryLock`` carries its own owner token, so two claim attempts in
one process are as exclusive as two in different processes.

Example:
    >>> lock = AdvisoryLock(conn, dialect, "schema:primary::users")
    >>> with lock.try_with_lock() as acquired:
    ...     if acquired:
    ...         run_step()
"""

from __future__ import annotations

import logging
import zlib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import uuid4

from migration_spine.dialect import Dialect, SQLiteDialect
from migration_spine.models import utc_now
from migration_spine.protocols import Connection
from migration_spine.schema import TABLES

logger = logging.getLogger(__name__)

# Keeps our keys away from advisory locks taken by other tools.
SALT = 936723412

LOCK_TABLE = TABLES["locks"]


def advisory_lock_key(name: str) -> int:
    """64-bit signed key for ``pg_try_advisory_lock``."""
    return zlib.crc32(name.encode("utf-8")) * SALT


class AdvisoryLock:
    """Cross-process mutual exclusion for one resource key."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        key: str = "",
        *,
        ttl_seconds: float = 600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not key:
            raise ValueError("lock key is required")
        self.conn = conn
        self.dialect = dialect or SQLiteDialect()
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.owner_id = str(uuid4())
        self._held = False

    def _ph(self, index: int) -> str:
        return self.dialect.placeholder(index - 1)

    @property
    def held(self) -> bool:
        return self._held

    def try_lock(self) -> bool:
        """Acquire without waiting. Returns False if another owner holds it."""
        if self._held:
            return True
        try:
            if self.dialect.supports_advisory_locks:
                row = self.conn.execute(
                    self.dialect.try_advisory_lock_sql(), (advisory_lock_key(self.key),)
                ).fetchone()
                self._held = bool(row[0])
            else:
                self._held = self._try_table_lock()
        except Exception as e:
            logger.error(f"Lock acquire failed for {self.key}: {e}")
            self.conn.rollback()
            return False

        if self._held:
            logger.debug(f"Acquired lock {self.key}")
        else:
            logger.debug(f"Lock already held: {self.key}")
        return self._held

    def _try_table_lock(self) -> bool:
        now = self.clock()
        expires = now + timedelta(seconds=self.ttl_seconds)
        self.conn.execute(
            f"DELETE FROM {LOCK_TABLE} WHERE lock_key = {self._ph(1)} AND expires_at < {self._ph(2)}",
            (self.key, now.isoformat()),
        )
        insert_sql = self.dialect.insert_or_ignore(
            LOCK_TABLE, ["lock_key", "owner_id", "acquired_at", "expires_at"]
        )
        cursor = self.conn.execute(
            insert_sql, (self.key, self.owner_id, now.isoformat(), expires.isoformat())
        )
        acquired = cursor.rowcount > 0
        self.conn.commit()
        return acquired

    def unlock(self) -> bool:
        """Release the lock if this instance holds it."""
        if not self._held:
            return False
        try:
            if self.dialect.supports_advisory_locks:
                self.conn.execute(self.dialect.advisory_unlock_sql(), (advisory_lock_key(self.key),))
            else:
                self.conn.execute(
                    f"DELETE FROM {LOCK_TABLE} WHERE lock_key = {self._ph(1)} AND owner_id = {self._ph(2)}",
                    (self.key, self.owner_id),
                )
            self.conn.commit()
        except Exception as e:
            logger.error(f"Lock release failed for {self.key}: {e}")
            self.conn.rollback()
            return False
        finally:
            self._held = False
        logger.debug(f"Released lock {self.key}")
        return True

    def is_locked(self) -> bool:
        """Whether any owner currently holds the key."""
        if self.dialect.supports_advisory_locks:
            row = self.conn.execute(
                "SELECT 1 FROM pg_locks WHERE locktype = 'advisory' "
                "AND ((classid::bigint << 32) | objid::bigint) = %s",
                (advisory_lock_key(self.key),),
            ).fetchone()
            return row is not None
        row = self.conn.execute(
            f"SELECT 1 FROM {LOCK_TABLE} WHERE lock_key = {self._ph(1)} AND expires_at > {self._ph(2)}",
            (self.key, self.clock().isoformat()),
        ).fetchone()
        return row is not None

    @contextmanager
    def try_with_lock(self) -> Iterator[bool]:
        """Yield whether the lock was acquired; always release on exit."""
        acquired = self.try_lock()
        try:
            yield acquired
        finally:
            if acquired:
                self.unlock()

    def __repr__(self) -> str:
        return f"AdvisoryLock({self.key!r}, held={self._held})"


__all__ = ["AdvisoryLock", "advisory_lock_key", "SALT"]
