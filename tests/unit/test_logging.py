"""Tests for structured logging configuration."""

from __future__ import annotations

import io
import json

import pytest
import structlog

from migration_spine.logging import LogContext, configure_logging, get_logger


@pytest.fixture()
def stream():
    buffer = io.StringIO()
    yield buffer
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestConfigureLogging:
    def test_json_output(self, stream):
        configure_logging(level="INFO", json_format=True, service="migration-worker", stream=stream)
        get_logger("test.json").info("scheduler_pass_finished", executed=3)

        [line] = _lines(stream)
        assert line["event"] == "scheduler_pass_finished"
        assert line["executed"] == 3
        assert line["log.level"] == "info"
        assert line["service.name"] == "migration-worker"
        assert "@timestamp" in line

    def test_level_filter(self, stream):
        configure_logging(level="WARNING", json_format=True, stream=stream)
        logger = get_logger("test.level")
        logger.info("hidden")
        logger.warning("shown")
        assert [line["event"] for line in _lines(stream)] == ["shown"]

    def test_console_output(self, stream):
        configure_logging(level="INFO", json_format=False, stream=stream)
        get_logger("test.console").info("migration_paused")
        assert "migration_paused" in stream.getvalue()


class TestLogContext:
    def test_binds_for_scope(self, stream):
        configure_logging(level="INFO", json_format=True, stream=stream)
        logger = get_logger("test.context")
        with LogContext(migration_id=7, kind="schema"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _lines(stream)
        assert inside["migration_id"] == 7
        assert inside["kind"] == "schema"
        assert "migration_id" not in outside
