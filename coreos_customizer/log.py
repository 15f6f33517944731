"""Logging setup for the command line."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(message)s"


def configure_logging(level: str = "INFO", console: Console | None = None) -> logging.Logger:
    """Route package logging through rich and return the package logger.

    Args:
        level: Logging level name.
        console: Console to log to; stderr if not provided.

    Returns:
        The ``coreos_customizer`` logger.
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger("coreos_customizer")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


__all__ = ["configure_logging"]
