from __future__ import annotations

import hashlib
import math
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Fixed-window counter: first hit in a window sets the expiry, later hits
# only increment. Returns the hit count and the window's remaining TTL in ms.
_FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash the subject so emails and IPs never collide with key delimiters."""

    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


def _window_result(limit: int, current: int, ttl_ms: int) -> Tuple[bool, int, int]:
    allowed = int(current) <= limit
    remaining = max(0, limit - int(current))
    reset_seconds = max(1, math.ceil(int(ttl_ms) / 1000))
    return allowed, remaining, reset_seconds


class RedisCache:
    """Thin async Redis wrapper for shared rate limit windows."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit against ``key``; returns (allowed, remaining, reset_seconds)."""
        current, ttl_ms = await self._fixed_window(
            keys=[_normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return _window_result(limit, current, ttl_ms)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests.

    Avoids binding a client to pytest's per-test event loops while exposing the
    same awaitable interface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        current, ttl_ms = self._fixed_window(
            keys=[_normalize_rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return _window_result(limit, current, ttl_ms)

    async def close(self) -> None:
        self.client.close()
