"""Logging setup shared by the CLI, web server and MCP server."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def setup_logging(
    level: int = logging.WARNING,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure root logging for the application.

    Args:
        level: Logging level for the application loggers
        stream: Output stream, stderr by default so stdout stays clean for MCP stdio

    Returns:
        The package logger
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("jira_db")
    logger.setLevel(level)
    return logger
