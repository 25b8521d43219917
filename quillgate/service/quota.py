"""Per-identity admission quota backed by the shared counter store."""

from __future__ import annotations

import hashlib
from typing import Optional, Protocol, Tuple

from quillgate.logging import get_logger
from quillgate.storage.models import AdmissionDecision, Admitted, Identity, Rejected

logger = get_logger(__name__)


class CounterStore(Protocol):
    """Shared counter store with expiring integer keys.

    ``get``, ``increment``, ``set_expiry`` and ``ttl`` are the plain key-value
    contract of the store. Admission uses only ``admit``, which performs the
    compare, the increment and the first-in-window expiry as one atomic step.
    """

    async def get(self, key: str) -> Optional[int]: ...

    async def increment(self, key: str) -> int: ...

    async def set_expiry(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def admit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]: ...


def quota_key(identity: Identity) -> str:
    """Derive a collision-resistant counter key for an identity.

    The subject is hashed so delimiters or odd characters in issuer-supplied
    subjects cannot collide with other keys.
    """
    digest = hashlib.sha256(identity.subject.encode()).hexdigest()
    if identity.anonymous:
        return f"quota:ip:{digest}"
    return f"quota:{digest}"


class QuotaLedger:
    """Admit/charge decisions against a fixed window per identity key."""

    def __init__(self, store: CounterStore, *, limit: int = 5, window_seconds: int = 86400):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    async def admit(self, identity_key: str, is_admin: bool) -> AdmissionDecision:
        if is_admin:
            # No counter mutation for the privileged identity
            logger.info("quota_admin_bypass", key=identity_key)
            return Admitted(bypassed=True)

        admitted, count, ttl = await self.store.admit(
            identity_key, self.limit, self.window_seconds
        )
        reset_seconds = ttl if ttl > 0 else self.window_seconds
        if not admitted:
            logger.info(
                "quota_rejected",
                key=identity_key,
                count=count,
                limit=self.limit,
                retry_after=reset_seconds,
            )
            return Rejected(retry_after=max(1, reset_seconds), count=count)

        logger.info(
            "quota_admitted",
            key=identity_key,
            count=count,
            limit=self.limit,
            reset_seconds=reset_seconds,
        )
        return Admitted(
            count=count,
            remaining=max(0, self.limit - count),
            reset_seconds=reset_seconds,
        )
