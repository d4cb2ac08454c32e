from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import RateLimited
from sessionguard.storage.models import normalize_email
from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_LOCAL_PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class WindowPolicy:
    name: str
    prefix: str
    limit: int
    window_seconds: int


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


class RateLimiter:
    """Fixed-window counters per (policy, subject).

    Windows live in Redis when a cache is configured so every worker shares
    them; otherwise they are kept in process, keyed by the caller's clock.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.cache = cache
        self.login_ip = WindowPolicy(
            "ip", "login:ip", settings.login_ip_rate_limit, settings.login_ip_window_seconds
        )
        self.login_identity = WindowPolicy(
            "identity",
            "login:id",
            settings.login_identity_rate_limit,
            settings.login_identity_window_seconds,
        )
        self.global_ip = WindowPolicy(
            "global", "global", settings.global_rate_limit, settings.global_window_seconds
        )
        self._local: Dict[str, Tuple[int, datetime, timedelta]] = {}
        self._local_lock = asyncio.Lock()

    async def hit(self, policy: WindowPolicy, subject: str, now: datetime) -> RateLimitInfo:
        """Count one request; raises ``RateLimited`` once the window is exhausted."""
        key = f"{policy.prefix}:{subject}"
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, policy.limit, policy.window_seconds
            )
        else:
            allowed, remaining, reset_seconds = await self._hit_local(key, policy, now)
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                window=policy.name,
                limit=policy.limit,
                retry_after=reset_seconds,
            )
            raise RateLimited(policy.name, reset_seconds)
        return RateLimitInfo(policy.limit, remaining, reset_seconds)

    async def _hit_local(
        self, key: str, policy: WindowPolicy, now: datetime
    ) -> Tuple[bool, int, int]:
        window = timedelta(seconds=policy.window_seconds)
        async with self._local_lock:
            if len(self._local) > _LOCAL_PRUNE_THRESHOLD:
                self._prune(now)
            count, started, _ = self._local.get(key, (0, now, window))
            if now - started >= window:
                count, started = 0, now
            count += 1
            self._local[key] = (count, started, window)
        reset_seconds = max(1, math.ceil((started + window - now).total_seconds()))
        return count <= policy.limit, policy.limit - count, reset_seconds

    def _prune(self, now: datetime) -> None:
        expired = [
            key
            for key, (_, started, window) in self._local.items()
            if now - started >= window
        ]
        for key in expired:
            del self._local[key]

    async def check_login_ip(self, ip: str, now: datetime) -> RateLimitInfo:
        return await self.hit(self.login_ip, ip, now)

    async def check_login_identity(self, email: str, now: datetime) -> RateLimitInfo:
        return await self.hit(self.login_identity, normalize_email(email), now)

    async def check_global(self, ip: str, now: datetime) -> RateLimitInfo:
        return await self.hit(self.global_ip, ip, now)
