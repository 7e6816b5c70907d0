"""
Structured Logging with Structlog.

JSON logs with request correlation. A possessed token id is enough to redeem
an offer at the counter, so token values never reach the log stream whole.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

# Characters of a token id kept in logs
TOKEN_ID_LOG_PREFIX = 8

_TOKEN_ID_KEYS = ("token_id", "superseded_token_id", "superseded_by")
_TOKEN_VALUE_KEYS = ("token", "token_value")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service name and version to every entry."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_tokens(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop signed token values and shorten token ids."""
    for key in _TOKEN_VALUE_KEYS:
        if key in event_dict:
            event_dict[key] = "[redacted]"
    for key in _TOKEN_ID_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > TOKEN_ID_LOG_PREFIX:
            event_dict[key] = value[:TOKEN_ID_LOG_PREFIX]
    return event_dict


def build_processors(log_format: str, debug: bool) -> list[Processor]:
    """Processor chain for the configured format."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_tokens,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer() if debug else structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging() -> None:
    """
    Configure structlog on top of standard library logging.

    A JSON entry looks like:
    {
        "event": "scan_validated",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "app.services.scan_validator",
        "service": "redemption-api",
        "version": "0.1.0",
        "request_id": "req-123",
        "token_id": "Qm9yZWQh",
        "outcome": "accepted"
    }
    """
    level = settings.log_level.upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))

    structlog.configure(
        processors=build_processors(settings.log_format, debug=level == "DEBUG"),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("redemption_token_issued", user_id=user_id, offer_id=offer_id)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(request_id="req-123", merchant_id="m-456"):
            logger.info("scan_received")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
