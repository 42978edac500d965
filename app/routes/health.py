# app/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.infrastructure.observability.logging import log_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "annotation-engine"}


@router.get("/readyz")
async def readyz():
    """Readiness check against the shared store and configuration."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["redis"] = {
            "ok": bool(redis_ok),
            "latency_ms": latency_ms,
            "host": settings.redis_host(),
        }
        overall_ok = overall_ok and bool(redis_ok)
        log_health_check("redis", bool(redis_ok), latency_ms)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    config_issues = []
    if not settings.AUTH_JWT_SECRET:
        config_issues.append("AUTH_JWT_SECRET not set")
    if not settings.BLOB_STORAGE_URL:
        config_issues.append("BLOB_STORAGE_URL not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
