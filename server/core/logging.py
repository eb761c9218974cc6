"""Structured logging for the stats cache service.

structlog renders through the stdlib logging tree so uvicorn, httpx and our
own loggers share handlers. Context bound with ``structlog.contextvars``
(e.g. the job id while a queue job runs) is merged into every event.
"""

import sys
import structlog
import logging
from pathlib import Path
from typing import List, Optional
from core.config import Settings

SERVICE_NAME = "stats-cache"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "watchfiles", "aiosqlite")


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    return handlers


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging at ``settings.log_level``."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=_handlers(settings), format="%(message)s", force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    json_output = settings.log_format == "json"
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        _add_service,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso" if json_output else "%H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.insert(3, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=30,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Debug-level trace of one cache call."""
    if hit is not None:
        kwargs["cache_hit"] = hit
    logger.debug("Cache operation", operation=operation, cache_key=key, **kwargs)


def log_job_event(logger: structlog.BoundLogger, event: str, job_id: str,
                  status: str, **kwargs) -> None:
    """Log request queue lifecycle transitions with a stable shape."""
    logger.info(
        "Queue job event",
        job_event=event,
        job_id=job_id,
        job_status=status,
        **kwargs
    )


def log_upstream_call(logger: structlog.BoundLogger, service: str, path: str,
                      success: bool, **kwargs) -> None:
    """Log upstream API calls with standardized format."""
    logger.info(
        "Upstream call completed",
        service=service,
        path=path,
        success=success,
        **kwargs
    )
