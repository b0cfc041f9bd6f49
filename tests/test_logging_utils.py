"""Tests for logging setup."""
from __future__ import annotations

import logging

from colorlog import ColoredFormatter
import pytest

from board_tap.logging_utils import TRACE_LEVEL, configure_logging, resolve_log_level


@pytest.fixture
def restore_root_logger():
    """Root logger, with its handlers and level restored afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestResolveLogLevel:
    """Mapping of -v flags and configured level names."""

    @pytest.mark.parametrize(
        "verbosity, fallback, expected",
        [
            (0, "INFO", logging.INFO),
            (0, "warning", logging.WARNING),
            (0, "bogus", logging.INFO),
            (1, "ERROR", logging.DEBUG),
            (2, "ERROR", TRACE_LEVEL),
            (3, "ERROR", TRACE_LEVEL),
        ],
    )
    def test_levels(self, verbosity, fallback, expected):
        """Flags override the configured level; unknown names fall back to INFO."""
        assert resolve_log_level(verbosity, fallback) == expected


class TestConfigureLogging:
    """Root handler setup."""

    def test_color_formatter(self, restore_root_logger):
        """A terminal gets colorlog output."""
        configure_logging(logging.DEBUG, color=True)
        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, ColoredFormatter)

    def test_plain_formatter_under_systemd(self, restore_root_logger, monkeypatch):
        """Under systemd the journal adds timestamps, so the format omits them."""
        monkeypatch.setenv("INVOCATION_ID", "abc")
        configure_logging(logging.INFO, color=False)
        formatter = restore_root_logger.handlers[0].formatter
        assert not isinstance(formatter, ColoredFormatter)
        assert "asctime" not in formatter._fmt

    def test_paho_kept_quiet(self, restore_root_logger):
        """Trace logging does not turn on paho chatter."""
        configure_logging(TRACE_LEVEL, color=False)
        assert logging.getLogger("paho").level == logging.INFO
        assert logging.getLevelName(TRACE_LEVEL) == "TRACE"
