"""Structured logging setup (structlog over stdlib logging).

Log lines emitted while a workflow runs carry its execution_id and
workflow_id: the interpreter binds them with execution_log_context(), and
merge_contextvars folds them into every event, handler logs included.
"""

import sys
import logging
from pathlib import Path
from typing import ContextManager, List

import structlog

from core.config import Settings

# Third-party loggers kept at WARNING whatever LOG_LEVEL says
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosmtplib", "aiosqlite")


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    handlers: List[logging.Handler] = [console_handler]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        handlers.append(file_handler)
    return handlers


def _renderer(settings: Settings) -> List:
    """Timestamp and renderer processors for LOG_FORMAT."""
    if settings.log_format == "json":
        return [structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.JSONRenderer()]
    return [structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(
                colors=False,
                pad_event=35,
                exception_formatter=structlog.dev.plain_traceback
            )]


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog once, from LOG_LEVEL / LOG_FORMAT / LOG_FILE."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=_handlers(settings, level), format="%(message)s")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    stamper, renderer = _renderer(settings)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            stamper,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def execution_log_context(execution_id: str, workflow_id: str) -> ContextManager:
    """Bind run identifiers to every log event of the current task until exit."""
    return structlog.contextvars.bound_contextvars(execution_id=execution_id,
                                                   workflow_id=workflow_id)


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log how long an operation took (mutation, execution, proposal) with context."""
    logger.info(
        "Operation completed",
        operation=operation,
        duration_ms=int((end_time - start_time) * 1000),
        **kwargs
    )
