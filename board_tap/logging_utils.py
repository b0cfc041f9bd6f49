from __future__ import annotations

import logging
import os
import sys

from colorlog import ColoredFormatter

TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

_LOG_COLORS = {
    "TRACE": "cyan",
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _format(with_time: bool) -> str:
    return ("%(asctime)s " if with_time else "") + "%(levelname)s %(name)s %(message)s"


def configure_logging(level: int, color: bool | None = None) -> None:
    """Install a single stream handler on the root logger.

    Colors are used when stderr is a terminal unless ``color`` says otherwise.
    Under systemd the journal adds its own timestamps, so they are left out.
    """
    if color is None:
        color = sys.stderr.isatty()
    with_time = "INVOCATION_ID" not in os.environ
    handler = logging.StreamHandler()
    if color:
        handler.setFormatter(
            ColoredFormatter("%(log_color)s" + _format(with_time), log_colors=_LOG_COLORS)
        )
    else:
        handler.setFormatter(logging.Formatter(_format(with_time)))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # paho logs every reconnect attempt at DEBUG; keep it out of -v output.
    logging.getLogger("paho").setLevel(max(level, logging.INFO))


def resolve_log_level(verbosity: int, fallback: str) -> int:
    if verbosity >= 2:
        return TRACE_LEVEL
    if verbosity == 1:
        return logging.DEBUG
    level = logging.getLevelName(fallback.upper())
    return level if isinstance(level, int) else logging.INFO
