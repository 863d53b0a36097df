# crm_sync/routes/health.py
"""
Health check endpoints with database pool and queue monitoring.
"""

import time

from fastapi import APIRouter

from crm_sync.config import settings
from crm_sync.db.pool import db_health_check
from crm_sync.infrastructure.observability.logging import log_health_check
from crm_sync.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "crm-sync"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering Redis (sync queue) and the database pool.
    """
    checks = {}
    overall_ok = True

    # 1) Redis / sync queue
    t0 = time.time()
    redis_ok = await fast_redis.ping()
    latency_ms = round((time.time() - t0) * 1000, 1)
    checks["redis"] = {"ok": redis_ok, "latency_ms": latency_ms}
    if redis_ok:
        checks["redis"]["sync_queue_depth"] = await fast_redis.queue_length(settings.SYNC_QUEUE_KEY)
    log_health_check("redis", redis_ok, latency_ms)
    overall_ok = overall_ok and redis_ok

    # 2) Database pool
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = db_health.get("healthy", False)
    latency_ms = round((time.time() - t0) * 1000, 1)

    checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
    if "pool_stats" in db_health:
        checks["database"].update(db_health["pool_stats"])
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    log_health_check("database", is_healthy, latency_ms, db_health.get("error"))
    overall_ok = overall_ok and is_healthy

    # 3) Configuration needed by the sync pipeline
    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set")
    if not settings.JWT_SECRET:
        config_issues.append("JWT_SECRET not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
