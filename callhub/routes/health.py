# callhub/routes/health.py
"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request

from callhub.db.pool import db_health_check
from callhub.infrastructure.observability.logging import log_health_check
from callhub.services.infrastructure.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "callhub"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check covering Redis, the database pool and the call runtime.
    """
    checks = {}
    overall_ok = True

    # 1) Redis
    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
        log_health_check("redis", bool(redis_ok), latency_ms)
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)

        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                }
            )
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, checks["database"].get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Call runtime
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        checks["calls"] = {"ok": False, "error": "Call runtime not started"}
        overall_ok = False
    else:
        checks["calls"] = {
            "ok": True,
            "online_users": runtime.presence.online_count(),
            "live_sessions": len(runtime.store.live_sessions()),
            "billing_timers": len(runtime.billing),
        }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
