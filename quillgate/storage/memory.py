from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCounterStore:
    """In-process counter store with expiring keys.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. It mirrors the Redis
    semantics the quota ledger depends on: ``ttl`` returns -2 for a missing
    key and -1 for a key without expiry, and expired keys read as absent.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: Dict[str, int] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    def _purge(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._values:
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return max(1, int(round(deadline - self._clock())))

    def _set_expiry(self, key: str, seconds: int) -> bool:
        if key not in self._values:
            return False
        self._expires_at[key] = self._clock() + max(1, int(seconds))
        return True

    async def get(self, key: str) -> Optional[int]:
        self._purge(key)
        return self._values.get(key)

    async def set(self, key: str, value: int) -> None:
        """Seed a counter directly; no expiry is attached."""
        self._values[key] = int(value)
        self._expires_at.pop(key, None)

    async def increment(self, key: str) -> int:
        self._purge(key)
        self._values[key] = self._values.get(key, 0) + 1
        return self._values[key]

    async def set_expiry(self, key: str, seconds: int) -> bool:
        return self._set_expiry(key, seconds)

    async def ttl(self, key: str) -> int:
        return self._ttl(key)

    async def admit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        async with self._lock:
            self._purge(key)
            current = self._values.get(key, 0)
            if current >= limit:
                ttl = self._ttl(key)
                return False, current, ttl if ttl > 0 else window_seconds
            self._values[key] = current + 1
            if current == 0 or key not in self._expires_at:
                self._set_expiry(key, window_seconds)
            return True, current + 1, self._ttl(key)

    async def close(self) -> None:
        return None
