"""
Application State
=================

Process-wide store connections that persist across requests.

WHY this exists:
- Every request and every job slice talks to the same key-value store
- A shared connection pool avoids reconnect overhead per request
- Tests swap the client out by assigning `kv_client` directly

WHAT it stores:
- redis_pool: Shared redis.asyncio ConnectionPool
- kv_client: Shared KVClient wrapping a Redis client on that pool

WHERE it's used:
- journeyx/deps.py: get_kv_client() dependency
- journeyx/main.py: health check and shutdown
- journeyx/workers/arq_worker.py: job functions

Design:
- Module-level singletons, created lazily on first use
- Initialization failures are logged, not raised; callers handle None
"""

import logging
from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from journeyx.deps import get_settings
from journeyx.services.kv_client import KVClient

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
kv_client: Optional[KVClient] = None


def get_kv_client() -> Optional[KVClient]:
    """Return the shared client, initializing it on first call."""
    global redis_pool, kv_client
    if kv_client is not None:
        return kv_client

    try:
        settings = get_settings()
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
        )
        kv_client = KVClient(Redis(connection_pool=redis_pool), default_timeout=settings.KV_TIMEOUT_SECONDS)
        logger.info(
            "[STATE] Shared Redis connection pool initialized (max_connections=%d)",
            settings.REDIS_MAX_CONNECTIONS,
        )
    except Exception as e:
        logger.error(f"[STATE] Failed to initialize Redis: {e}")
        logger.warning("[STATE] App will start but attribution endpoints return 503 until Redis is configured")
        redis_pool = None
        kv_client = None
    return kv_client


async def close() -> None:
    """Release the shared pool (application shutdown)."""
    global redis_pool, kv_client
    if kv_client is not None:
        await kv_client.redis.aclose()
    if redis_pool is not None:
        await redis_pool.disconnect()
    redis_pool = None
    kv_client = None
    logger.info("[STATE] Redis connection pool closed")
