"""Centralized logging configuration for the ``ledger_sync`` package.

- ``configure_logging(...)`` attaches one ``StreamHandler`` to the package
  logger (``"ledger_sync"``). Entrypoints (the CLI, a host application) call
  it once at startup.
- ``get_logger(name)`` returns a child logger and makes sure the package
  logger carries a ``NullHandler`` until somebody configures it, so library
  use stays silent.

Engine modules never attach handlers of their own; they log through
``get_logger("ledger_sync.<module>")``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "ledger_sync"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if level is None:
        level = os.getenv("LEDGER_SYNC_LOG_LEVEL")
        if not level:
            return logging.INFO
    text = str(level).strip().upper()
    if text.isdigit():
        return int(text)
    numeric = logging.getLevelName(text)
    # getLevelName returns "Level X" for unknown names
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Configure the package logger exactly once.

    Parameters
    ----------
    level:
        ``int`` or level name. ``None`` reads ``LEDGER_SYNC_LOG_LEVEL`` and
        falls back to ``INFO``.
    fmt:
        Optional format string (defaults to ``asctime name level message``).
    stream:
        Destination for the single ``StreamHandler``.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved = _parse_level(level)
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name with library-safe defaults."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
