"""
Logging configuration for the Shelf Sync Service.

Structlog renders both its own events and standard library records, as
coloured console lines or as one JSON object per line.
"""

import logging
import sys
import os
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional
import structlog
from structlog.types import Processor

QUIET_LOGGERS = ("urllib3", "requests", "sqlalchemy", "apscheduler", "waitress")


def get_log_level() -> str:
    """Get log level from environment."""
    return os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: Optional[str] = None, json_logs: bool = False) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Level name; LOG_LEVEL from the environment when omitted
        json_logs: Render JSON lines instead of console output
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_logs:
        renderer: Processor = structlog.processors.JSONRenderer()
        final_processors = [structlog.processors.format_exc_info, renderer]
    else:
        final_processors = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + final_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, structlog.stdlib.ProcessorFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, (level or get_log_level()).upper()))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind ``fields`` to every event logged inside the block.

    Bindings live in context variables, so inside a coroutine they follow
    that task only.
    """
    structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*fields)
