"""
Structured logging for the order orchestrator.

Configures structlog with request and order correlation. Console output is
used in development, JSON lines everywhere else. Every module obtains its
logger through ``get_logger(__name__)``.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor

from orderflow.core.config import get_settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
order_id_ctx: ContextVar[Optional[str]] = ContextVar("order_id", default=None)

# Third-party loggers that are chatty at INFO.
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "asyncio")


def add_correlation(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Attach the current request ID and the order being processed.

    An ``order_id`` passed explicitly on the event wins over the one bound
    to the context.
    """
    request_id = request_id_ctx.get()
    if request_id:
        event_dict["request_id"] = request_id
    order_id = order_id_ctx.get()
    if order_id:
        event_dict.setdefault("order_id", order_id)
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog and the standard library root logger.

    Development renders colored console lines; test, staging and production
    render JSON.
    """
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.dev.ConsoleRenderer(colors=True)
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh UUID) to the current context and return it."""
    request_id = request_id or str(uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_ctx.get()


def bind_order_id(order_id: Optional[Any]) -> None:
    """Bind the order currently being processed to the logging context."""
    order_id_ctx.set(str(order_id) if order_id is not None else None)


def clear_context() -> None:
    """Reset correlation so it does not leak into the next request on this task."""
    request_id_ctx.set("")
    order_id_ctx.set(None)


@contextmanager
def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    slow_threshold_ms: float = 2000.0,
    **context: Any,
) -> Iterator[None]:
    """
    Time the enclosed block and log its duration.

    Logs at INFO on success, WARNING when the block ran longer than
    ``slow_threshold_ms`` and ERROR when it raised (the error propagates).

    Example:
        >>> with log_performance(logger, "inventory_refresh", sources=2):
        ...     snapshot = await aggregator.refresh()
    """
    started = time.perf_counter()

    def elapsed_ms() -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    try:
        yield
    except Exception as e:
        logger.error(
            "Operation failed",
            operation=operation,
            duration_ms=elapsed_ms(),
            error_type=type(e).__name__,
            **context,
        )
        raise

    duration_ms = elapsed_ms()
    log = logger.warning if duration_ms > slow_threshold_ms else logger.info
    log("Operation completed", operation=operation, duration_ms=duration_ms, **context)
