"""
Structured logging configuration using structlog.

structlog events and standard-library records (apscheduler, sqlalchemy,
httpx, the ledger store) go through one ProcessorFormatter, so the worker
emits a single stream: JSON lines in production, colored console output in
development.

Usage:
    from app.core.logging_config import configure_logging, get_logger

    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    logger = get_logger(__name__)
    logger.info("Ingestion cycle complete", processed=4, failed=1)

Output in production (JSON):
    {"event": "Ingestion cycle complete", "processed": 4, "failed": 1,
     "cycle_id": "a1b2c3d4", "trigger": "poll", "level": "info",
     "logger": "app.core.scheduler", "timestamp": "2024-01-01T12:00:00Z"}

Output in development (colored):
    2024-01-01T12:00:00Z [info     ] Ingestion cycle complete  cycle_id=a1b2c3d4 failed=1 processed=4 trigger=poll
"""

import logging
import os
import sys
from typing import Any, Optional, Union

import structlog

IS_PRODUCTION = os.getenv("APP_ENV") == "production"

# Chatty libraries that only matter at WARNING and above
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "apscheduler", "sqlalchemy.engine")


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level {level!r}")
    return resolved


def configure_logging(level: Union[int, str] = logging.INFO, json_output: Optional[bool] = None) -> None:
    """
    Configure structlog and route stdlib logging through the same renderer.

    Args:
        level: Minimum level, as a logging constant or a name ("DEBUG", "info")
        json_output: Force JSON (True) or console (False) rendering.
            Defaults to JSON when APP_ENV=production.
    """
    log_level = _resolve_level(level)
    use_json = IS_PRODUCTION if json_output is None else json_output

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if use_json:
        renderer: Any = structlog.processors.JSONRenderer()
        final_processors = [structlog.processors.format_exc_info, renderer]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        final_processors = [renderer]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final_processors],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance (typically get_logger(__name__))."""
    return structlog.get_logger(name)
