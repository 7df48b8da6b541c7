"""
Structured logging configuration using structlog.
Supports JSON and console output formats.

Call setup_logging() once from the process entry point; modules obtain
loggers with get_logger(__name__) and bind request context through
structlog.contextvars.
"""

import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

from core.config import Settings

MAX_LOGGED_VALUE_LENGTH = 500

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine")


def clip_long_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Truncate oversized string fields (error texts, URLs) so page content never floods the log."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_LENGTH:
            event_dict[key] = value[:MAX_LOGGED_VALUE_LENGTH] + "..."
    return event_dict


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        clip_long_values,
    ]


def setup_logging(settings: Settings) -> None:
    """Configure structlog and stdlib logging from settings."""
    shared_processors = _shared_processors()

    if settings.LOG_FORMAT == "json":
        final_processors: List[Processor] = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + final_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    # uvicorn's access log duplicates RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named logger."""
    return structlog.get_logger(name)
