# leadflow/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter, Depends

from leadflow.config import settings
from leadflow.db.pool import db_health_check
from leadflow.features.distribution.api.dependencies import get_leads_client
from leadflow.services.leads_service_client import LeadsServiceClient
from leadflow.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "leadflow"}


@router.get("/readyz")
async def readyz(leads_client: LeadsServiceClient = Depends(get_leads_client)):
    """
    Readiness check covering the database pool, Redis and the lead store.

    Redis only gates readiness when strict duplicate locking is enabled.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Redis
    t0 = time.time()
    redis_ok = await fast_redis.ping()
    checks["redis"] = {
        "ok": redis_ok,
        "required": settings.DUPLICATE_STRICT_LOCKING,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if settings.DUPLICATE_STRICT_LOCKING:
        overall_ok = overall_ok and redis_ok

    # 3) Lead store
    t0 = time.time()
    store_ok = await leads_client.check_health()
    checks["lead_store"] = {
        "ok": store_ok,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    overall_ok = overall_ok and store_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
