"""Logging setup for the ng command line.

Library modules only ever do ``log = logging.getLogger(__name__)``; the
handler is attached here, by the CLI, on the ``notegraph`` package logger.

NOTEGRAPH_LOG_LEVEL picks the level:
    - DEBUG: per-file parse and resolution details
    - INFO: rebuild summaries (default, also used for unknown names)
    - WARNING: skipped files, rejected rebuilds, deferred changes that failed
    - ERROR: only failures (what --quiet shows)
"""

import logging
import os
import sys

PACKAGE_LOGGER = "notegraph"
LOG_LEVEL_ENV = "NOTEGRAPH_LOG_LEVEL"
LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"

# Level picked by the last configure_logging() call; leaving quiet mode restores it
_configured_level = logging.INFO


def resolve_level(name: str | None) -> int:
    """Map a level name such as "debug" to its logging constant."""
    if not name:
        return logging.INFO
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> logging.Logger:
    """Send package log records to stderr.

    An explicit level wins over NOTEGRAPH_LOG_LEVEL. The handler is only
    attached once; later calls just change the level.
    """
    global _configured_level
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV)
    _configured_level = level if isinstance(level, int) else resolve_level(level)

    logger = logging.getLogger(PACKAGE_LOGGER)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(_configured_level)
    return logger


def set_quiet_mode(quiet: bool) -> None:
    """Only let errors through when quiet is set; otherwise restore the configured level."""
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.ERROR if quiet else _configured_level)
