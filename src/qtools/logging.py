"""Centralised logging configuration with structured output."""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict

import structlog

DEFAULT_LOG_LEVEL = "INFO"


def _configure_structlog(level: str, json: bool) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(level: str = DEFAULT_LOG_LEVEL, json: bool = False) -> None:
    """Initialise stdlib + structlog logging."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    # basicConfig is a no-op once the root logger has a handler
    logging.getLogger().setLevel(numeric_level)
    _configure_structlog(level, json)


def get_logger(name: str, **initial_values: Dict[str, Any]) -> structlog.stdlib.BoundLogger:
    """Return a bound structured logger.

    The logger is a lazy proxy: it picks up whatever ``configure_logging``
    installs before its first use, so module-level loggers never configure
    logging at import time.
    """

    logger = structlog.get_logger(name)
    if initial_values:
        return logger.bind(**initial_values)
    return logger


__all__ = ["configure_logging", "get_logger"]
