############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# logging_config.py: Structured logging configuration using structlog
#
############################################################

"""Structured logging configuration using structlog.

Every event carries the service name and deployment environment. Values
under credential-like keys (API keys, bearer tokens, webhook signatures)
are masked before rendering.
"""

import logging
import sys
from typing import Any, List, MutableMapping, Optional

import structlog
from structlog.types import EventDict, Processor

from warpengine.app.settings import Settings, get_settings

_SECRET_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "password",
        "secret",
        "stripe_signature",
        "svix_signature",
        "token",
    }
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "stripe")


def _mask_secrets(_: Any, __: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & _SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _service_context(settings: Settings) -> Processor:
    service = settings.app_name.lower()
    env = "prod" if settings.is_production else settings.environment

    def add_service(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> EventDict:
        event_dict.setdefault("service", service)
        event_dict.setdefault("env", env)
        return event_dict

    return add_service


def _renderers(settings: Settings) -> List[Processor]:
    if settings.log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def _handlers(
    settings: Settings, formatter: logging.Formatter, level: int
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
    return handlers


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog over the stdlib logging module."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_context(settings),
        _mask_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderers(settings),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers = _handlers(settings, formatter, level)
    root_logger.setLevel(level)

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_request_context(**kwargs: Any) -> None:
    """Bind request-scoped values (request_id, user_id) to every log event."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
