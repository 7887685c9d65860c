"""
Shared Redis connection - worker heartbeats and alert cooldowns.
Redis is never the source of truth for orchestration state; every caller
treats it as best-effort.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HEARTBEAT_TTL_SECONDS = 120

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from fieldops.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def heartbeat_key(worker_name: str) -> str:
    return f"fieldops:worker_health:{worker_name}"


async def write_heartbeat(worker_name: str, ttl: int = HEARTBEAT_TTL_SECONDS) -> None:
    """Store a worker heartbeat timestamp. Failures are logged at debug and ignored."""
    try:
        redis = await get_redis()
        await redis.set(
            heartbeat_key(worker_name),
            datetime.now(timezone.utc).isoformat(),
            ex=ttl,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))
