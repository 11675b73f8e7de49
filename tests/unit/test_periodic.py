"""Tests for the thread-based periodic runner."""

from __future__ import annotations

import threading

from migration_spine.periodic import PeriodicRunner


class TestPeriodicRunner:
    def test_runs_immediately_then_on_interval(self):
        ticked = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            if len(calls) >= 3:
                ticked.set()

        runner = PeriodicRunner(tick, interval_seconds=0.01)
        runner.start()
        assert ticked.wait(5)
        runner.stop()

        assert not runner.is_running
        assert runner.tick_count >= 3

    def test_start_twice_keeps_one_thread(self):
        runner = PeriodicRunner(lambda: None, interval_seconds=10, run_immediately=False)
        runner.start()
        first = runner._thread
        runner.start()
        assert runner._thread is first
        runner.stop()

    def test_stop_without_start(self):
        PeriodicRunner(lambda: None).stop()

    def test_errors_counted_and_loop_continues(self):
        done = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("database unavailable")

        runner = PeriodicRunner(tick, interval_seconds=0.01)
        runner.start()
        assert done.wait(5)
        runner.stop()

        health = runner.health()
        assert health["error_count"] >= 2
        assert health["last_error"] == "database unavailable"
        assert health["backend"] == "thread"
        assert health["last_tick"] is not None

    def test_health_before_start(self):
        health = PeriodicRunner(lambda: None, interval_seconds=30).health()
        assert health == {
            "healthy": False,
            "backend": "thread",
            "tick_count": 0,
            "error_count": 0,
            "last_tick": None,
            "last_error": None,
            "interval_seconds": 30,
        }
