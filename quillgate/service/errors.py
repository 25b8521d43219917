from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure kinds returned by the gateway components."""

    MISSING_CREDENTIAL = "missing_credential"
    KEY_SET_UNAVAILABLE = "key_set_unavailable"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_CLAIMS = "invalid_claims"
    EXPIRED = "expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    VALIDATION = "validation"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    UPSTREAM = "upstream"


AUTH_ERROR_KINDS = frozenset(
    {
        ErrorKind.MISSING_CREDENTIAL,
        ErrorKind.KEY_SET_UNAVAILABLE,
        ErrorKind.INVALID_SIGNATURE,
        ErrorKind.INVALID_CLAIMS,
        ErrorKind.EXPIRED,
    }
)


@dataclass(frozen=True)
class AuthFailure:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class PipelineError:
    kind: ErrorKind
    stage: str
    message: str


class UpstreamFailure(Exception):
    """Raised by external-service adapters when a call fails or returns garbage."""

    def __init__(self, message: str, *, service: str = "llm") -> None:
        super().__init__(message)
        self.message = message
        self.service = service


class SearchError(UpstreamFailure):
    """Search backend unreachable or returned an unusable payload."""

    def __init__(self, message: str) -> None:
        super().__init__(message, service="search")


class ServiceError(Exception):
    """Base class for errors rendered as response envelopes.

    Each subclass defines an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - method_not_allowed (405)
    - rate_limited (429)
    - upstream_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Quota exhausted for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"


class UpstreamError(ServiceError):
    """The generation pipeline failed on an external dependency (500)."""
    status_code = 500
    error_code = "upstream_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "AUTH_ERROR_KINDS",
    "AuthFailure",
    "AuthenticationError",
    "ErrorKind",
    "PipelineError",
    "RateLimitedError",
    "SearchError",
    "ServerError",
    "ServiceError",
    "UpstreamError",
    "UpstreamFailure",
    "ValidationError",
]
