from __future__ import annotations

from typing import Dict, Optional, Type

from fastapi import APIRouter, Header, Request, Response

from quillgate.api.schemas import Envelope, GenerateRequest, GenerateResponse
from quillgate.logging import get_correlation_id, get_logger
from quillgate.service.auth import anonymous_identity, extract_bearer
from quillgate.service.errors import (
    AuthenticationError,
    AuthFailure,
    ErrorKind,
    PipelineError,
    RateLimitedError,
    ServerError,
    ServiceError,
    UpstreamError,
    ValidationError,
)
from quillgate.service.quota import quota_key
from quillgate.service.runtime import get_runtime
from quillgate.storage.models import Identity, Rejected

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

# The one place where a component's failure kind becomes an HTTP error
_KIND_TO_ERROR: Dict[ErrorKind, Type[ServiceError]] = {
    ErrorKind.MISSING_CREDENTIAL: AuthenticationError,
    ErrorKind.KEY_SET_UNAVAILABLE: AuthenticationError,
    ErrorKind.INVALID_SIGNATURE: AuthenticationError,
    ErrorKind.INVALID_CLAIMS: AuthenticationError,
    ErrorKind.EXPIRED: AuthenticationError,
    ErrorKind.QUOTA_EXCEEDED: RateLimitedError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.TOOL_LOOP_EXCEEDED: UpstreamError,
    ErrorKind.UPSTREAM: UpstreamError,
}

EXPIRED_CHALLENGE = 'Bearer error="invalid_token", error_description="the access token expired"'


def error_for(
    kind: ErrorKind,
    message: str,
    *,
    detail: Optional[dict] = None,
    headers: Optional[dict[str, str]] = None,
) -> ServiceError:
    error_cls = _KIND_TO_ERROR.get(kind, ServerError)
    return error_cls(message, detail=detail, headers=headers)


def _auth_error(failure: AuthFailure) -> ServiceError:
    headers = {"WWW-Authenticate": EXPIRED_CHALLENGE} if failure.kind is ErrorKind.EXPIRED else None
    return error_for(
        failure.kind, failure.message, detail={"reason": failure.kind.value}, headers=headers
    )


def _pipeline_error(error: PipelineError) -> ServiceError:
    return error_for(
        error.kind,
        error.message,
        detail={"reason": error.kind.value, "stage": error.stage},
    )


class RateLimitInfo:
    """Quota state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _authenticate(runtime, request: Request, authorization: Optional[str]) -> Identity:
    token = extract_bearer(authorization)
    if token is None and not authorization and runtime.settings.allow_anonymous:
        client_host = request.client.host if request.client else None
        return anonymous_identity(client_host)
    outcome = await runtime.auth.verify(token)
    if isinstance(outcome, AuthFailure):
        raise _auth_error(outcome)
    return outcome


@router.post("/generate", response_model=Envelope, tags=["generate"])
async def generate(
    body: GenerateRequest,
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Run the research-then-write pipeline for one admitted request.

    The body is validated before anything else runs, so malformed requests
    never reach the identity provider or the quota store. Quota is charged
    at admission and is not refunded if generation later fails.

    Raises:
        400: If the body is malformed
        401: If the bearer credential is missing or invalid
        429: If the caller's quota for the current window is spent
        500: If generation fails upstream or the service is misconfigured
    """
    trace = [{"stage": "received"}]
    try:
        conversation = body.to_conversation()
    except ValueError as exc:
        raise error_for(ErrorKind.VALIDATION, str(exc)) from exc
    logger.info(
        "generate_received",
        turns=len(conversation.turns),
        has_system_instruction=conversation.system_instruction is not None,
    )

    runtime = get_runtime()
    identity = await _authenticate(runtime, request, authorization)
    trace.append({"stage": "authenticated"})
    logger.info(
        "generate_authenticated",
        is_admin=identity.is_admin,
        anonymous=identity.anonymous,
    )

    if not getattr(runtime.llm, "is_configured", True):
        # Checked before admission so a misconfiguration never spends quota
        logger.error("generate_llm_not_configured")
        raise ServerError("generative service is not configured")

    decision = await runtime.quota.admit(quota_key(identity), identity.is_admin)
    if isinstance(decision, Rejected):
        raise error_for(
            ErrorKind.QUOTA_EXCEEDED,
            "usage quota exceeded for the current window",
            detail={"retry_after": decision.retry_after, "limit": runtime.quota.limit},
            headers={"Retry-After": str(decision.retry_after)},
        )
    trace.append({"stage": "quota_checked", "bypassed": decision.bypassed})
    if not decision.bypassed:
        RateLimitInfo(
            runtime.quota.limit, decision.remaining or 0, decision.reset_seconds
        ).apply_headers(response)
    logger.info(
        "generate_quota_checked",
        bypassed=decision.bypassed,
        count=decision.count,
        remaining=decision.remaining,
    )

    result = await runtime.pipeline.run(conversation)
    if result.error is not None:
        raise _pipeline_error(result.error)

    payload = GenerateResponse(
        text=result.text or "",
        tool_rounds=result.tool_rounds,
        usage=result.usage,
        trace=trace + result.trace,
    )
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=payload.model_dump(), request_id=request_id)
    return Envelope(status="ok", data=payload.model_dump())
