"""Structured logging configuration."""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from fieldsync.core.config import Settings

# Storage and HTTP libraries log every statement and request at INFO
_QUIET_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "httpx", "httpcore")


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging.

    JSON lines by default; ``log_format=console`` gives plain timestamped lines
    for a developer terminal. ``log_file`` adds a file handler next to stdout.
    """
    level = getattr(logging, settings.log_level.upper())

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(level=level, handlers=handlers, format="%(message)s")

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if settings.log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        timestamper = structlog.processors.TimeStamper(fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            timestamper,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                       key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_sync_operation(logger: structlog.BoundLogger, operation: str,
                      operation_id: str, success: Optional[bool] = None, **kwargs) -> None:
    """Log sync queue transitions with a standardized format."""
    log_data = {
        "operation": operation,
        "operation_id": operation_id,
        **kwargs
    }

    if success is None:
        logger.debug("Sync operation", **log_data)
    elif success:
        logger.info("Sync operation", success=True, **log_data)
    else:
        logger.warning("Sync operation", success=False, **log_data)
