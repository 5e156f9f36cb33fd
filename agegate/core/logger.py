import logging
import sys
from typing import Any

import structlog

from agegate.core.config import settings

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset(
    {
        "dob",
        "date_of_birth",
        "authorization",
        "cookie",
        "password",
        "token",
        "api_token",
        "client_secret",
        "raw_payload",
    }
)


def redact_sensitive(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask identity and credential values before they reach a renderer."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _configure_stdlib_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        stream=sys.stdout,
    )


def configure_logging() -> None:
    _configure_stdlib_logging()

    timestamper = structlog.processors.TimeStamper(fmt="iso")

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        timestamper,
        redact_sensitive,
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(**initial_values: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
