"""
Liveness and readiness checks.

/health answers as long as the process is up. /health/ready checks the
database and Redis, and reports the last heartbeat of each in-process worker.
Heartbeats are informational only: cron-driven deployments run no workers.
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from fieldops.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("task_runner", "timeout_monitor")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False


async def _redis_status() -> tuple[bool, dict]:
    """(reachable, {worker name: last heartbeat or None})."""
    from fieldops.utils.cache import get_redis, heartbeat_key
    try:
        redis = await get_redis()
        await redis.ping()
        heartbeats = {name: await redis.get(heartbeat_key(name)) for name in WORKER_NAMES}
    except Exception as e:
        logger.warning("Readiness: redis unreachable: %s", str(e))
        return False, {}
    return True, heartbeats


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    redis_ok, workers = await _redis_status()
    checks = {"database": await _database_ok(db), "redis": redis_ok}
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": _now_iso(),
    }
