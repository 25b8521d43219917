"""Structured logging for the gateway.

Events are rendered by structlog with the request's correlation id, which the
HTTP middleware binds through ``structlog.contextvars``. Before rendering,
every string value is scrubbed of bearer tokens, JWTs and API-key query
parameters, so an httpx error string that echoes a search URL never carries
the key into the log stream.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, MutableMapping, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Field names whose whole value is a credential
_CREDENTIAL_FIELDS = ("authorization", "token", "api_key", "secret", "password")

_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")
_JWT = re.compile(r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_KEY_PARAM = re.compile(r"(?i)\b((?:key|api_?key|access_token)=)[^&\s'\"]+")

_CREDENTIAL_VALUES = (
    (_BEARER, "Bearer [redacted]"),
    (_JWT, "[jwt]"),
    (_KEY_PARAM, r"\1[redacted]"),
)


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request and return its id."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def mask_credentials(text: str) -> str:
    for pattern, replacement in _CREDENTIAL_VALUES:
        text = pattern.sub(replacement, text)
    return text


def redact_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: blank credential fields, mask credentials inside other strings."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _CREDENTIAL_FIELDS):
            event_dict[key] = "[redacted]"
        else:
            event_dict[key] = mask_credentials(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON, LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if dev_mode is None:
        dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not dev_mode:
        # format_exc_info runs before redaction
        processors += [
            structlog.processors.format_exc_info,
            redact_credentials,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [redact_credentials, structlog.dev.ConsoleRenderer(colors=dev_mode)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_pipeline_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Log the stage transitions of one pipeline run."""
    (logger or get_logger("pipeline")).info("pipeline_trace", stages=len(trace), trace=trace)


_UPSTREAM_DETAIL = re.compile(
    r"(?i)https?://\S+"  # endpoint URLs, with any query string
    r"|/(?:home|var|etc|usr|opt|tmp|srv)/\S+"  # filesystem paths
    r"|traceback \(most recent call last\).*"  # stack traces
)

MAX_CALLER_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Reduce an upstream failure message to something safe to show a caller.

    Credentials are masked as in the log stream, endpoint URLs, paths and
    tracebacks are replaced, and the result is capped in length.
    """
    if not isinstance(error, str) or not error.strip():
        return "upstream service failed"
    result = _UPSTREAM_DETAIL.sub(replacement, mask_credentials(error))
    if len(result) > MAX_CALLER_MESSAGE_LENGTH:
        result = result[: MAX_CALLER_MESSAGE_LENGTH - 3] + "..."
    return result
