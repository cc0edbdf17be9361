"""Tests for structlog configuration."""

import pytest
import structlog

from mcphost.config import Settings
from mcphost.core.logging_setup import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_renderer_outside_debug():
    configure_logging(Settings(debug=False))

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)


def test_console_renderer_in_debug():
    configure_logging(Settings(debug=True))

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_level_filtering(capsys):
    configure_logging(Settings(log_level="WARNING"))
    logger = structlog.get_logger()

    logger.info("dropped_event")
    logger.warning("kept_event", mcp_id="abc")

    out = capsys.readouterr().out
    assert "dropped_event" not in out
    assert "kept_event" in out
