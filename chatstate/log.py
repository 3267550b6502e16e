"""Structured logging setup."""

from __future__ import annotations

import logging
import sys

import structlog

# Above CRITICAL: nothing gets through.
_SILENT_LEVEL = logging.CRITICAL + 10


def setup_logging(level: str = "info", fmt: str = "console", *, enabled: bool = True) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer."""
    log_level = getattr(logging, level.upper(), logging.INFO) if enabled else _SILENT_LEVEL
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)
    # httpx logs every Bot API request at INFO.
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
