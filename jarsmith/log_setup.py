"""Loguru sinks for the entry scripts.

Dramatiq and uvicorn log through the standard library; both are routed into
loguru so a process writes one consistent stream.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

from jarsmith.config import Settings, get_settings

__all__ = ["configure_logging"]

_STDLIB_LOGGERS = ("dramatiq", "uvicorn", "uvicorn.error", "uvicorn.access")


class _LoguruInterceptHandler(logging.Handler):
    """Bridge standard-library logging records into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - thin wrapper
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        logger.opt(depth=6, exception=record.exc_info).bind(module=record.name).log(level, record.getMessage())


def _configure_stdlib_logging(level: str) -> None:
    handler: logging.Handler = _LoguruInterceptHandler()

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _STDLIB_LOGGERS:
        named = logging.getLogger(name)
        named.handlers = [handler]
        named.propagate = False
        named.setLevel(level)

    logging.captureWarnings(True)


def configure_logging(settings: Settings | None = None, *, component: str) -> str:
    """Install the stderr sink at ``LOG_LEVEL`` and return the level used."""

    settings = settings or get_settings()
    level = (settings.log_level or "INFO").upper()

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        backtrace=False,
        diagnose=False,
    )
    _configure_stdlib_logging(level)

    logger.bind(module=f"script.{component}").info("{} logging initialised at level {}", component, level)
    return level
