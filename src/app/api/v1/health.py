"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness
checks the execution store, Redis, and the time-series sink when one is
configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, Redis and time-series connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok", "timeseries": "ok"}

    # Check database
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    # Check Redis
    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    # Check time-series sink
    sink = getattr(request.app.state, "timeseries", None)
    if sink is None:
        checks["timeseries"] = "disabled"
    else:
        try:
            if not await sink.ping():
                checks["timeseries"] = "error"
                checks["timeseries_error"] = "ping failed"
        except Exception as e:
            checks["timeseries"] = "error"
            checks["timeseries_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB, Redis and the time-series sink.

    Returns 200 if all pass, 503 if any critical dependency fails. The
    time-series sink is best-effort, so its failure degrades but does not
    fail readiness.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("redis") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
