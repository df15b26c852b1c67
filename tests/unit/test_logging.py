"""Unit tests for structured logging."""

import logging
from unittest.mock import MagicMock, patch
from uuid import uuid7

import pytest
import structlog

from custodian.core.context import OperationContext, operation_context
from custodian.core.logging import (
    LogContext,
    add_environment_info,
    add_operation_context,
    log_exception,
    setup_logging,
)


@pytest.fixture
def mock_settings():
    """Patch the settings seen by the logging module."""
    settings = MagicMock()
    settings.ENVIRONMENT = "development"
    settings.log_level = "INFO"
    settings.DEBUG = False
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    with patch("custodian.core.logging.get_settings", return_value=settings):
        yield settings
    root.handlers = handlers
    root.setLevel(level)


class TestAddOperationContext:
    """Tests for add_operation_context processor."""

    def test_adds_context_when_available(self):
        """Context fields are added when an OperationContext is set."""
        ctx = OperationContext(
            correlation_id=uuid7(),
            worker_id="worker-a",
            organisation_id="acme-learning",
            data_type="communications",
        )

        with operation_context(ctx):
            result = add_operation_context(None, "info", {})

        assert result["correlation_id"] == str(ctx.correlation_id)
        assert result["worker_id"] == "worker-a"
        assert result["organisation_id"] == "acme-learning"
        assert result["data_type"] == "communications"
        assert result["actor_type"] == "system"
        assert "actor_id" not in result

    def test_explicit_values_take_precedence(self):
        """Values bound on the log call are not overwritten."""
        ctx = OperationContext(organisation_id="acme-learning")

        with operation_context(ctx):
            result = add_operation_context(None, "info", {"organisation_id": "globex-academy"})

        assert result["organisation_id"] == "globex-academy"

    def test_no_context_available(self):
        """Event dict is untouched outside an operation."""
        result = add_operation_context(None, "info", {"event": "test"})

        assert result == {"event": "test"}


class TestAddEnvironmentInfo:
    """Tests for add_environment_info processor."""

    def test_adds_environment(self, mock_settings):
        mock_settings.ENVIRONMENT = "production"

        result = add_environment_info(None, "info", {})

        assert result["environment"] == "production"


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_default(self, mock_settings):
        """Console logging at the configured level."""
        setup_logging()

        assert logging.getLogger().level == logging.INFO
        assert len(logging.getLogger().handlers) == 1
        assert logging.getLogger("sqlalchemy").propagate is False
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_setup_logging_override_level(self, mock_settings):
        setup_logging(log_level="DEBUG", json_format=True)

        assert logging.getLogger().level == logging.DEBUG

    def test_debug_enables_sql_echo(self, mock_settings):
        mock_settings.DEBUG = True

        setup_logging()

        assert logging.getLogger("sqlalchemy.engine").level == logging.INFO

    def test_production_renders_json(self, mock_settings):
        """Production output is JSON with the operation context processor."""
        mock_settings.ENVIRONMENT = "production"

        setup_logging()

        processors = structlog.get_config()["processors"]
        assert add_operation_context in processors
        assert add_environment_info in processors
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_development_renders_console(self, mock_settings):
        setup_logging(add_timestamp=False)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert not any(
            isinstance(p, structlog.processors.TimeStamper) for p in processors
        )


class TestLogContext:
    """Tests for LogContext context manager."""

    def test_log_context_binds_values(self):
        with LogContext(organisation_id="acme-learning", data_type="communications"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"organisation_id": "acme-learning", "data_type": "communications"}

        assert structlog.contextvars.get_contextvars() == {}


class TestLogException:
    """Tests for log_exception helper."""

    def test_log_exception(self):
        logger = MagicMock()
        error = ValueError("boom")

        log_exception(logger, error, stage="retention_cycle")

        logger.exception.assert_called_once_with(
            "exception_occurred",
            error_type="ValueError",
            error_message="boom",
            stage="retention_cycle",
        )
