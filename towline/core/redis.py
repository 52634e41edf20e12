"""Shared async Redis client (sweeper lock, location throttle)."""

from __future__ import annotations

from redis.asyncio import Redis

from towline.core.config import settings

_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Return a shared async Redis client, creating it lazily."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
