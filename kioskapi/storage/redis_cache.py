from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the first hit in a window sets the expiry, later hits only count.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
if count > limit then
  return {0, 0, ttl}
end
return {1, limit - count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Ping Redis with a short-lived sync client so no event loop is bound at startup."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # hashed so client-supplied parts (IP, headers) cannot collide on delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> bool | Tuple[bool, int, int]:
        """Count one attempt against ``key`` in the current fixed window.

        Returns whether the attempt is allowed, or ``(allowed, remaining,
        reset_seconds)`` when ``return_remaining`` is set.
        """

        allowed, remaining, reset_after = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, max(1, int(window_seconds))],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return allowed_bool, max(0, int(remaining)), max(0, int(reset_after))
        return allowed_bool

    async def ping(self) -> float:
        """Round-trip latency in milliseconds, for the health document."""
        started = time.perf_counter()
        await self.client.ping()
        return round((time.perf_counter() - started) * 1000, 2)

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
