"""
Structured Logging with Structlog.

JSON logs (console renderer for local development) carrying service context
and any bound webhook or user context. Payment secrets never reach the output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from subscription_billing.config import settings

REDACTED_KEYS = frozenset(
    {"client_secret", "payment_client_secret", "stripe_signature", "authorization", "token"}
)

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("stripe", "httpx", "uvicorn.access")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service name and version to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values of keys that can carry Stripe client secrets or bearer tokens."""
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    A JSON entry looks like:
    {
        "event": "refill_granted",
        "level": "info",
        "timestamp": "2024-02-15T02:00:00.123456Z",
        "logger": "subscription_billing.services.refill_scheduler",
        "service": "subscription-billing-api",
        "version": "0.1.0",
        "user_id": "...",
        "amount": 300000
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(event_id="evt_123", event_type="invoice.paid"):
            logger.info("stripe_webhook_processed")  # includes event_id, event_type
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
