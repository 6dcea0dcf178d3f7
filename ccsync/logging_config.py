"""
Structured logging setup.

Every module logs through structlog with an event string plus keyword
context. ``configure_logging`` is called once by the entry point; library
code only calls ``get_logger``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog

_CONFIGURED = False


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name. Defaults to ``LOG_LEVEL`` or ``INFO``.
        fmt: ``console`` or ``json``. Defaults to ``LOG_FORMAT`` or ``console``.
    """
    global _CONFIGURED

    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    fmt_name = (fmt or os.getenv("LOG_FORMAT") or "console").lower()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        stream=sys.stdout,
        force=True,
    )

    if fmt_name == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _CONFIGURED = True


def is_configured() -> bool:
    return _CONFIGURED


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)
