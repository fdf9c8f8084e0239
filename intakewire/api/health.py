"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + dispatcher)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from intakewire.database import get_db
from intakewire.workers.dispatcher import get_dispatcher

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and that the
    work dispatcher is accepting work. Redis only backs heartbeats and the
    test-send rate counter, so it does not gate readiness.
    """
    checks = {"database": False, "redis": False, "dispatcher": False}

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    # Check Redis
    try:
        from intakewire.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    dispatcher = get_dispatcher()
    checks["dispatcher"] = dispatcher is not None and dispatcher.is_running

    ready = checks["database"] and checks["dispatcher"]
    return {
        "status": "ready" if ready and checks["redis"] else ("degraded" if ready else "not_ready"),
        "checks": checks,
        "queue_depth": dispatcher.queue_depth if dispatcher else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
