"""
Structured logging configuration using structlog.

Engine code logs event names with keyword context. Work on one correlation
key runs inside ``correlation_context`` so every record it emits carries
the key, service and error code without repeating them at each call site.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from loglens.config import Settings, get_settings

# Third-party loggers that report every job run at INFO
_NOISY_LOGGERS = ("apscheduler",)


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Record the log level as ``severity``; domain severities use other keys."""
    event_dict.setdefault("severity", method_name.upper())
    return event_dict


def add_component(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag records with the loglens component that emitted them."""
    name = event_dict.get("logger")
    if name and name.startswith("loglens."):
        event_dict.setdefault("component", name.split(".")[1])
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging for the engine.
    Uses JSON format in production, console format in development.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if settings.log_format == "json" and not settings.dev_mode:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_component,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_severity,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def correlation_context(key: Any, **extra: Any) -> Iterator[None]:
    """
    Bind a correlation key to every record logged in this block.

    Args:
        key: A CorrelationKey (anything with service_name and error_code)
        **extra: Further context, e.g. incident_id
    """
    with structlog.contextvars.bound_contextvars(
        correlation_key=str(key),
        service_name=key.service_name,
        error_code=key.error_code,
        **extra,
    ):
        yield


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
