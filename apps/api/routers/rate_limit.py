"""Redis-backed rate limiting dependency with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "smartaudit:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
_redis_client: Optional[redis.Redis] = None


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_timeout=1.0)
    return _redis_client


async def close_rate_limit_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = _get_redis()
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, window_seconds)
    return int(current) <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_KEY_PREFIX}:{prefix}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Rate limit falling back to local counters: %s", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency


def reset_local_counters() -> None:
    _local_counters.clear()
