from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper acting as the shared quota counter store."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic increment-and-compare. EXPIRE runs only when INCR created the key
    # (or the key somehow carries no TTL), so later admissions in the same
    # window never push the reset time back.
    _ADMIT_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  local ttl = redis.call('TTL', key)
  if ttl < 0 then
    ttl = window
  end
  return {0, current, ttl}
end

local count = redis.call('INCR', key)
if count == 1 or redis.call('TTL', key) == -1 then
  redis.call('EXPIRE', key, window)
end
return {1, count, redis.call('TTL', key)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._admit = self.client.register_script(self._ADMIT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[int]:
        value = await self.client.get(key)
        return int(value) if value is not None else None

    async def increment(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def set_expiry(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, max(1, int(seconds))))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def admit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """Atomically charge one slot if ``key`` is under ``limit``.

        Returns:
            Tuple of (admitted, count, ttl_seconds)
        """
        admitted, count, ttl = await self._admit(
            keys=[key], args=[int(limit), int(window_seconds)]
        )
        return bool(int(admitted)), int(count), int(ttl)

    async def close(self) -> None:
        await self.client.aclose()
