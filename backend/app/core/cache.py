"""
Redis layer — lazily created async Redis client shared across the process.

Provides:
    • Async connection pool (created on first use)
    • Liveness probe for the health report
    • Shutdown hook

When RATE_LIMIT_BACKEND=redis the abuse-guard counters live in the same
Redis (through limits' own storage client); this module lets the health
report confirm that Redis is reachable.

Usage:
    from backend.app.core.cache import ping_redis

    healthy = await ping_redis()
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Get or create the async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", _redact(settings.REDIS_URL))
    return _redis_client


async def ping_redis() -> bool:
    """True if Redis answers PING. Errors are logged, not raised."""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url
