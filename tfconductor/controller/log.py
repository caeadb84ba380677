"""Logging for the controller.

Everything is written through loguru.  Fields bound with ``logger.bind``
(``workspace``, ``operation``, ...) are rendered as ``key=value`` pairs at
the end of each line, so one reconcile can be followed with a grep.
Libraries that log through the stdlib (httpx, GitPython, asyncio) are
forwarded under their own logger name.
"""

from __future__ import annotations

import logging
import sys
from functools import partial
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>{extra[context]}"
)

# Only their warnings are worth a line.
QUIET_LOGGERS = ("asyncio", "httpx", "httpcore", "git")


def _render_context(record: Record) -> None:
    extra = record["extra"]
    fields = sorted((k, v) for k, v in extra.items() if k != "context")
    extra["context"] = "".join(f" {k}={v}" for k, v in fields)


def _stdlib_origin(source: logging.LogRecord, record: Record) -> None:
    record.update(name=source.name, function=source.funcName, line=source.lineno)


class StdlibBridge(logging.Handler):
    """Re-emits stdlib records through loguru, keeping the emitting logger's name and line."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.patch(partial(_stdlib_origin, record)).opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, sink: Any = sys.stderr) -> list[int]:
    """Make loguru the only sink and return the ids of the handlers it installed."""
    level = level.upper()
    handler_ids = logger.configure(
        handlers=[{"sink": sink, "level": level, "format": _FORMAT}],
        patcher=_render_context,
        extra={"context": ""},
    )

    logging.basicConfig(handlers=[StdlibBridge()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.bind(operation="startup").debug("Logging configured (level={})", level)
    return handler_ids
