"""
Tests for fieldops/api/health.py - liveness and readiness endpoints.
"""
from datetime import datetime
from unittest.mock import AsyncMock, patch

from fieldops.api.health import health_check, readiness_check


# ---------------------------------------------------------------------------
# GET /health - basic liveness
# ---------------------------------------------------------------------------


class TestHealthCheck:
    async def test_returns_healthy(self):
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == "1.0.0"
        assert datetime.fromisoformat(result["timestamp"]).tzinfo is not None


# ---------------------------------------------------------------------------
# GET /health/ready - readiness check (DB + Redis)
# ---------------------------------------------------------------------------


class TestReadinessCheck:
    async def test_all_healthy_returns_ready(self, mock_redis):
        mock_db = AsyncMock()
        mock_redis.get = AsyncMock(return_value="2026-03-01T18:00:00+00:00")

        result = await readiness_check(db=mock_db)

        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}
        assert result["workers"] == {
            "task_runner": "2026-03-01T18:00:00+00:00",
            "timeout_monitor": "2026-03-01T18:00:00+00:00",
        }

    async def test_db_failure_returns_degraded(self, mock_redis):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))

        result = await readiness_check(db=mock_db)

        assert result["status"] == "degraded"
        assert result["checks"]["database"] is False
        assert result["checks"]["redis"] is True

    async def test_redis_failure_returns_degraded(self):
        mock_db = AsyncMock()

        with patch("fieldops.utils.cache.get_redis", new_callable=AsyncMock, side_effect=Exception("refused")):
            result = await readiness_check(db=mock_db)

        assert result["status"] == "degraded"
        assert result["checks"]["redis"] is False
        assert result["workers"] == {}
