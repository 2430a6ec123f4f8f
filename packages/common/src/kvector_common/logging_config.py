"""Structured logging setup.

Modules obtain a logger with ``get_logger(__name__)`` and log snake_case
events with key/value context:

    >>> logger = get_logger(__name__)
    >>> logger.info("connection_opened", host="db1", port=7878)

``configure_logging()`` is optional for library use; applications call it
once at startup.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

from kvector_common.config import get_settings

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
]


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name. Default: ``Settings.log_level``
        log_format: ``console`` or ``json``. Default: ``Settings.log_format``
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_format = (log_format or settings.log_format).lower()

    renderer: Any
    exc_processors: list[Any] = []
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
        exc_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *exc_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> Any:
    """Get a structlog logger bound to ``name``."""
    return structlog.get_logger(name)
