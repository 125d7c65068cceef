"""
Per-owner request limits for the expensive endpoints.

Fixed windows: each (owner, endpoint) pair may make `max_requests` calls per
`interval_sec`; the window starts with the first call. Two backends, the
same way transcoder slots have them:
- local: a dict per process (default);
- redis: one counter key per window, shared by every API process
  (RATE_LIMIT_REDIS_ENABLED=true). Keys expire with their window.

A backend failure lets the request through.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from adreel.errors import RateLimited
from adreel.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    interval_sec: int
    max_requests: int


RATE_LIMITS: dict[str, RateLimit] = {
    # production jobs are the expensive part
    "videos.create": RateLimit(interval_sec=3600, max_requests=10),
    "posts.create": RateLimit(interval_sec=3600, max_requests=30),
    "default": RateLimit(interval_sec=60, max_requests=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_sec: int
    limit: int


class RateLimiter:
    def __init__(
        self,
        limits: dict[str, RateLimit] | None = None,
        *,
        redis_client: aioredis.Redis | None = None,
        clock=time.time,
    ):
        self.limits = {**RATE_LIMITS, **(limits or {})}
        self._redis = redis_client
        self._clock = clock
        # (owner, endpoint) -> (window_start, count)
        self._windows: dict[tuple[str, str], tuple[float, int]] = {}
        self._lock = threading.Lock()

    def limit_for(self, endpoint: str) -> RateLimit:
        return self.limits.get(endpoint) or self.limits["default"]

    async def check(self, owner_id: str, endpoint: str) -> RateLimitResult:
        """Count one request and say whether it is within the limit."""
        limit = self.limit_for(endpoint)
        if get_settings().rate_limit_redis_enabled:
            try:
                return await self._check_redis(owner_id, endpoint, limit)
            except RedisError as exc:
                logger.warning("[rate_limit] redis unavailable, allowing %s for %s: %s", endpoint, owner_id, exc)
                return RateLimitResult(True, limit.max_requests, limit.interval_sec, limit.max_requests)
        return self._check_local(owner_id, endpoint, limit)

    async def hit(self, owner_id: str, endpoint: str) -> RateLimitResult:
        """Like check(), but raises RateLimited when the limit is used up."""
        result = await self.check(owner_id, endpoint)
        if not result.allowed:
            logger.info("[rate_limit][owner=%s] %s limited for %ds", owner_id, endpoint, result.reset_sec)
            raise RateLimited(
                f"Too many requests. Try again in {result.reset_sec} seconds.",
                retry_after=result.reset_sec,
            )
        return result

    def _check_local(self, owner_id: str, endpoint: str, limit: RateLimit) -> RateLimitResult:
        now = self._clock()
        key = (owner_id, endpoint)
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= limit.interval_sec:
                start, count = now, 0
            reset = max(1, int(start + limit.interval_sec - now))
            if count >= limit.max_requests:
                return RateLimitResult(False, 0, reset, limit.max_requests)
            count += 1
            self._windows[key] = (start, count)
        return RateLimitResult(True, limit.max_requests - count, reset, limit.max_requests)

    async def _check_redis(self, owner_id: str, endpoint: str, limit: RateLimit) -> RateLimitResult:
        now = self._clock()
        window = int(now // limit.interval_sec)
        key = f"rl:{endpoint}:{owner_id}:{window}"
        r = self._client()
        async with r.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, limit.interval_sec)
            count, _ = await pipe.execute()
        reset = max(1, int((window + 1) * limit.interval_sec - now))
        if count > limit.max_requests:
            return RateLimitResult(False, 0, reset, limit.max_requests)
        return RateLimitResult(True, limit.max_requests - count, reset, limit.max_requests)

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(get_settings().redis_url, decode_responses=True)
        return self._redis

    def cleanup(self) -> int:
        """Drop local windows that have ended. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, (start, _) in self._windows.items()
                if now - start >= self.limit_for(key[1]).interval_sec
            ]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.info("[rate_limit] removed %d expired window(s)", len(expired))
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter
