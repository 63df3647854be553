import logging
import os
from typing import Optional
from uuid import uuid4

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# substrings of event keys whose string values are masked
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email")


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Start a fresh logging context for one request and return its id."""
    request_id = request_id or uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def mask_sensitive(logger, method_name, event_dict):
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_sensitive,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str):
    return structlog.get_logger(name)
