"""Per-client request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import ServiceError

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
_redis_client: Optional[redis.Redis] = None


class RateLimited(ServiceError):
    status_code = 429


def _client_identifier(request: Request) -> str:
    # The socket peer wins; X-Forwarded-For is client-controlled.
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def _get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    client = _get_redis()
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, window_seconds)
    return int(current)


async def _consume_local_quota(key: str, window_seconds: int) -> int:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency allowing `limit` requests per client per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"portrait:rate:{prefix}:{_client_identifier(request)}"
        try:
            current = await _consume_redis_quota(key, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.debug("Redis rate limit unavailable, using local counters: %s", exc)
            current = await _consume_local_quota(key, window_seconds)

        if current > limit:
            raise RateLimited(f"Rate limit exceeded for {prefix}. Try again later.")

    return _dependency
