from __future__ import annotations

import asyncio
import hmac
import time
from typing import Any, Callable, Optional, Sequence, Union

import httpx
import jwt

from quillgate.logging import get_logger
from quillgate.service.errors import AuthFailure, ErrorKind
from quillgate.storage.models import Identity

logger = get_logger(__name__)

# Unknown-kid refetches are throttled to at most one per interval
MIN_FORCED_REFRESH_SECONDS = 30.0


class KeySetError(Exception):
    """The issuer's public-key set could not be fetched or parsed."""


class KeySetCache:
    """Process-wide cache of the issuer's JWKS document.

    Concurrent refreshes collapse behind a lock so a cold cache triggers one
    fetch no matter how many requests arrive together. A stale set is kept
    and served when a refresh fails.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient,
        *,
        max_age_seconds: float = 600.0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.http_client = http_client
        self.max_age_seconds = max_age_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._key_set: Optional[jwt.PyJWKSet] = None
        self._fetched_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return (
            self._key_set is not None
            and self._clock() - self._fetched_at < self.max_age_seconds
        )

    async def get(self, *, force_refresh: bool = False) -> jwt.PyJWKSet:
        if not force_refresh and self._is_fresh():
            return self._key_set  # type: ignore[return-value]
        async with self._lock:
            if not force_refresh and self._is_fresh():
                return self._key_set  # type: ignore[return-value]
            if (
                force_refresh
                and self._key_set is not None
                and self._clock() - self._fetched_at < MIN_FORCED_REFRESH_SECONDS
            ):
                return self._key_set
            try:
                self._key_set = await self._fetch()
                self._fetched_at = self._clock()
            except KeySetError:
                if self._key_set is None:
                    raise
                logger.warning("jwks_refresh_failed_using_stale", url=self.url)
            return self._key_set

    async def _fetch(self) -> jwt.PyJWKSet:
        try:
            response = await self.http_client.get(self.url, timeout=self.timeout_seconds)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "jwks_fetch_failed",
                url=self.url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise KeySetError("unable to fetch key set") from exc
        try:
            key_set = jwt.PyJWKSet.from_dict(document)
        except (jwt.PyJWKSetError, jwt.PyJWKError, AttributeError, TypeError, KeyError) as exc:
            logger.warning("jwks_parse_failed", url=self.url, error=str(exc))
            raise KeySetError("key set is malformed") from exc
        logger.info("jwks_fetched", url=self.url, keys=len(key_set.keys))
        return key_set


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def _find_key(key_set: jwt.PyJWKSet, kid: Optional[str]) -> Optional[jwt.PyJWK]:
    if kid is None:
        # Single-key sets are commonly published without kids
        return key_set.keys[0] if len(key_set.keys) == 1 else None
    for key in key_set.keys:
        if key.key_id == kid:
            return key
    return None


class AuthVerifier:
    """Validate bearer credentials against the issuer's published keys."""

    def __init__(
        self,
        key_sets: Optional[KeySetCache],
        *,
        issuer: Optional[str],
        audience: Optional[str],
        algorithms: Sequence[str] = ("RS256",),
        admin_subject: Optional[str] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.key_sets = key_sets
        self.issuer = issuer
        self.audience = audience
        self.algorithms = list(algorithms)
        self.admin_subject = admin_subject
        self.leeway_seconds = leeway_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.key_sets and self.issuer and self.audience)

    def is_admin_subject(self, subject: str) -> bool:
        if not self.admin_subject:
            return False
        return hmac.compare_digest(subject.encode(), self.admin_subject.encode())

    async def verify(self, bearer_token: Optional[str]) -> Union[Identity, AuthFailure]:
        if not bearer_token:
            return AuthFailure(ErrorKind.MISSING_CREDENTIAL, "missing bearer credential")
        if not self.is_configured:
            logger.error("auth_not_configured")
            return AuthFailure(
                ErrorKind.KEY_SET_UNAVAILABLE, "identity provider is not configured"
            )

        try:
            header = jwt.get_unverified_header(bearer_token)
        except jwt.InvalidTokenError:
            return AuthFailure(ErrorKind.INVALID_SIGNATURE, "malformed credential")
        kid = header.get("kid")

        try:
            key_set = await self.key_sets.get()
            signing_key = _find_key(key_set, kid)
            if signing_key is None:
                # Issuer may have rotated keys since the last fetch
                key_set = await self.key_sets.get(force_refresh=True)
                signing_key = _find_key(key_set, kid)
        except KeySetError:
            return AuthFailure(ErrorKind.KEY_SET_UNAVAILABLE, "unable to load signing keys")
        if signing_key is None:
            logger.info("auth_unknown_kid", kid=kid)
            return AuthFailure(ErrorKind.INVALID_SIGNATURE, "credential signed by an unknown key")

        result = self._decode(bearer_token, signing_key)
        if isinstance(result, AuthFailure):
            logger.info("auth_rejected", kind=result.kind.value, reason=result.message)
            return result

        subject = result.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            logger.info("auth_rejected", kind=ErrorKind.INVALID_CLAIMS.value, reason="no subject")
            return AuthFailure(ErrorKind.INVALID_CLAIMS, "credential has no subject")
        return Identity(
            subject=subject,
            is_admin=self.is_admin_subject(subject),
            claims=result,
        )

    def _decode(self, token: str, signing_key: jwt.PyJWK) -> Union[dict[str, Any], AuthFailure]:
        try:
            return jwt.decode(
                token,
                key=signing_key.key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            return AuthFailure(ErrorKind.EXPIRED, "credential has expired")
        except (
            jwt.InvalidIssuerError,
            jwt.InvalidAudienceError,
            jwt.MissingRequiredClaimError,
            jwt.ImmatureSignatureError,
            jwt.InvalidIssuedAtError,
        ) as exc:
            return AuthFailure(ErrorKind.INVALID_CLAIMS, str(exc) or "invalid claims")
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError, jwt.DecodeError):
            return AuthFailure(ErrorKind.INVALID_SIGNATURE, "signature verification failed")
        except (jwt.InvalidTokenError, jwt.PyJWKError) as exc:
            return AuthFailure(ErrorKind.INVALID_CLAIMS, str(exc) or "invalid credential")


def anonymous_identity(client_address: Optional[str]) -> Identity:
    """Identity for unauthenticated callers, keyed by network address; never admin."""
    return Identity(subject=client_address or "unknown", anonymous=True)
