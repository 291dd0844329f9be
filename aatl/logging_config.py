"""
Structured logging configuration using structlog.

Executor events (``userop.*``, ``eip7702.*``) are structlog key/value events;
providers and the receipt poller use stdlib module loggers under ``aatl``.
Both are rendered by the same formatter: JSON by default, console at DEBUG.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import settings


PACKAGE_LOGGER = "aatl"


def setup_logging(log_level: Optional[str] = None) -> None:
    """Configure structlog and route the ``aatl`` loggers through it.

    Args:
        log_level: Override log level for the ``aatl`` loggers (default: settings.log_level)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    is_dev = level == logging.DEBUG

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if is_dev:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    # httpx request lines and other third-party loggers only surface warnings
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(max(level, logging.WARNING))
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)

