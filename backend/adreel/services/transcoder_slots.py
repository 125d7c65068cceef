"""
Concurrency limit for transcoder processes.

Two backends:
- local: an asyncio.Semaphore per process (default);
- redis: a sorted set shared by every API process and Celery worker
  (REDIS_SEMAPHORE_ENABLED=true).

Redis layout:
- key: sem:{name}
- members: unique tokens (UUIDs)
- scores: expiry timestamps (unix epoch), so a crashed holder frees its
  slot after REDIS_SEMAPHORE_TTL_SEC.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from adreel.settings import get_settings

logger = logging.getLogger(__name__)

TRANSCODER_SLOT = "ffmpeg"

_redis_client: aioredis.Redis | None = None
# loop -> {(name, limit): semaphore}; entries go away with their loop
_local_semaphores: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[tuple[str, int], asyncio.Semaphore]]" = (
    weakref.WeakKeyDictionary()
)


def _get_redis() -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _sem_key(name: str) -> str:
    return f"sem:{name}"


async def acquire_redis_slot(
    name: str,
    limit: int,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: int | None = None,
    client: aioredis.Redis | None = None,
) -> str:
    """Take a slot in the shared semaphore and return its token.

    Raises TimeoutError when no slot frees up within `wait_timeout_sec`.
    """
    settings = get_settings()
    if ttl_sec is None:
        ttl_sec = settings.redis_semaphore_ttl_sec
    if wait_timeout_sec is None:
        wait_timeout_sec = settings.semaphore_wait_timeout_sec

    r = client or _get_redis()
    key = _sem_key(name)
    token = str(uuid.uuid4())
    deadline = time.monotonic() + wait_timeout_sec
    backoff = 1.0

    while True:
        now_ts = time.time()
        await r.zremrangebyscore(key, "-inf", now_ts)
        current = await r.zcard(key)

        if current < limit:
            added = await r.zadd(key, {token: now_ts + ttl_sec}, nx=True)
            if added:
                # Another holder may have slipped in between zcard and zadd
                new_count = await r.zcard(key)
                if new_count > limit:
                    await r.zrem(key, token)
                else:
                    logger.info("[slots] acquired '%s' (token=%s, count=%d/%d)", name, token[:8], new_count, limit)
                    return token

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(
                f"Transcoder slot '{name}': waited {wait_timeout_sec}s "
                f"(limit={limit}, current={current})"
            )
        await asyncio.sleep(min(backoff, remaining))
        backoff = min(backoff * 1.5, 5.0)


async def release_redis_slot(name: str, token: str, *, client: aioredis.Redis | None = None) -> None:
    r = client or _get_redis()
    removed = await r.zrem(_sem_key(name), token)
    if removed:
        logger.info("[slots] released '%s' (token=%s)", name, token[:8])
    else:
        logger.warning("[slots] '%s' token %s already expired or released", name, token[:8])


def _local_semaphore(name: str, limit: int) -> asyncio.Semaphore:
    # Semaphores bind to the running loop on first wait and keep it referenced,
    # so loops closed by asyncio.run are dropped here
    for closed in [loop for loop in list(_local_semaphores) if loop.is_closed()]:
        _local_semaphores.pop(closed, None)
    per_loop = _local_semaphores.setdefault(asyncio.get_running_loop(), {})
    sem = per_loop.get((name, limit))
    if sem is None:
        sem = asyncio.Semaphore(limit)
        per_loop[(name, limit)] = sem
    return sem


@asynccontextmanager
async def transcoder_slot(name: str = TRANSCODER_SLOT) -> AsyncIterator[None]:
    """Hold one transcoder slot for the duration of the block."""
    settings = get_settings()
    limit = max(1, settings.max_ffmpeg_concurrency)

    if settings.redis_semaphore_enabled:
        token = await acquire_redis_slot(name, limit)
        try:
            yield
        finally:
            await release_redis_slot(name, token)
        return

    sem = _local_semaphore(name, limit)
    try:
        await asyncio.wait_for(sem.acquire(), timeout=settings.semaphore_wait_timeout_sec)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"Transcoder slot '{name}': waited {settings.semaphore_wait_timeout_sec}s") from exc
    try:
        yield
    finally:
        sem.release()
