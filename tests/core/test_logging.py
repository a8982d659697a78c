"""Tests for structlog configuration."""

import json

import pytest
import structlog

from rampart.core.logging import LogContext, bind_context, configure_logging, get_logger, unbind_context


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_output_is_ecs_compatible(self, capsys):
        """JSON lines carry ECS keys, service name and logger name."""
        configure_logging(level="INFO", json_format=True)
        get_logger("rampart.test").info("circuit_opened", circuit="ai_service", failures=5)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "circuit_opened"
        assert data["circuit"] == "ai_service"
        assert data["log.level"] == "info"
        assert data["service.name"] == "rampart"
        assert data["logger"] == "rampart.test"
        assert "@timestamp" in data

    def test_level_filtering(self, capsys):
        """Events below the configured level are dropped."""
        configure_logging(level="WARNING", json_format=True)
        get_logger("rampart.test").info("retry_attempt")
        assert capsys.readouterr().err == ""

    def test_context_is_merged(self, capsys):
        """Bound context variables appear on every line."""
        configure_logging(level="INFO", json_format=True)
        bind_context(correlation_id="req-1")
        get_logger("rampart.test").warning("boundary_fault")

        data = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert data["correlation_id"] == "req-1"


class TestLogContext:
    """Tests for scoped logging context."""

    def test_binds_and_unbinds(self):
        """Context is bound inside the block only."""
        with LogContext(dependency="db"):
            assert structlog.contextvars.get_contextvars()["dependency"] == "db"
        assert "dependency" not in structlog.contextvars.get_contextvars()

    def test_unbind_context(self):
        """unbind_context removes single keys."""
        bind_context(a=1, b=2)
        unbind_context("a")
        assert structlog.contextvars.get_contextvars() == {"b": 2}
