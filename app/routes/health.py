"""
Health check endpoints: liveness, readiness and database pool detail.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "sync-core"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check covering the database pool, the cache backend and the
    configuration the sync core needs.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}

        if "pool_stats" in db_health:
            checks["database"].update(
                {
                    "pool_size": db_health["pool_stats"].get("pool_size", 0),
                    "pool_available": db_health["pool_stats"].get("pool_available", 0),
                    "pool_utilization_percent": db_health["pool_stats"].get(
                        "pool_utilization_percent", 0
                    ),
                }
            )
        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, db_health.get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Cache backend
    container = getattr(request.app.state, "sync", None)
    t0 = time.time()
    if container is None:
        checks["cache"] = {"ok": False, "error": "Sync services not initialized"}
        overall_ok = False
    else:
        try:
            cache_ok = await container.cache.ping()
            checks["cache"] = {
                "ok": cache_ok,
                "backend": settings.CACHE_BACKEND,
                "latency_ms": round((time.time() - t0) * 1000, 1),
                "stats": await container.cache.stats(),
            }
            overall_ok = overall_ok and cache_ok
        except Exception as e:
            checks["cache"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False

    # 3) Configuration checks
    config_issues = []
    if not settings.SUPABASE_DB_URL:
        config_issues.append("SUPABASE_DB_URL not set")
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    elif not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY is not a usable Fernet key")
    if not settings.google_oauth_configured():
        config_issues.append("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not set")
    if settings.CACHE_BACKEND == "redis" and not settings.REDIS_URL:
        config_issues.append("REDIS_URL not set")

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
