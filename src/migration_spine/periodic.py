"""Thread-based periodic trigger for Scheduler passes.

Optional: deployments usually call ``Scheduler.run`` from cron, a Celery
Beat task or the ``migration-spine run --every`` command. ``PeriodicRunner``
is what that command uses.

┌──────────────────────────────────────────────────────────┐
│  PeriodicRunner                                          │
│                                                          │
│   start()                                                │
│      └── daemon thread                                   │
│            while not stop_event.wait(interval):          │
│                tick_count += 1                           │
│                tick()           ◄── Scheduler.run(...)   │
│                                                          │
│   stop()                                                 │
│      └── stop_event.set(); thread.join(timeout)          │
└──────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from migration_spine.models import utc_now

logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Calls ``tick`` every ``interval_seconds`` on a daemon thread.

    Example:
        >>> runner = PeriodicRunner(engine.run_scheduler, interval_seconds=60)
        >>> runner.start()
        >>> # ... later ...
        >>> runner.stop()
    """

    name = "thread"

    def __init__(
        self,
        tick: Callable[[], Any],
        interval_seconds: float = 60.0,
        *,
        run_immediately: bool = True,
    ) -> None:
        self.tick = tick
        self.interval = interval_seconds
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._error_count = 0
        self._last_tick: datetime | None = None
        self._last_error: str | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        if self.is_running:
            logger.warning("PeriodicRunner already started")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="migration-scheduler")
        self._thread.start()

    def _loop(self) -> None:
        logger.info(f"PeriodicRunner started (interval={self.interval}s)")
        if self.run_immediately:
            self._run_tick()
        while not self._stop_event.wait(self.interval):
            self._run_tick()
        logger.info("PeriodicRunner stopped")

    def _run_tick(self) -> None:
        with self._lock:
            self._tick_count += 1
            self._last_tick = utc_now()
        try:
            self.tick()
        except Exception as e:
            with self._lock:
                self._error_count += 1
                self._last_error = str(e)
            logger.exception(f"Tick failed: {e}")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop, waiting up to ``timeout`` seconds for the current tick."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Scheduler thread did not stop cleanly")
        self._thread = None

    def wait(self) -> None:
        """Block until :meth:`stop` is called from another thread or a signal handler."""
        while self.is_running:
            self._stop_event.wait(1.0)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "error_count": self._error_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "last_error": self._last_error,
            "interval_seconds": self.interval,
        }


__all__ = ["PeriodicRunner"]
