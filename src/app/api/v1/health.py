"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready), and startup
(/health/startup) checks. Readiness covers the database and, when the
rate limiter slot lives there, Redis. NetSuite reachability is not probed;
the sync worker reports its own state on /api/v1/sync/queue.
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


async def _check_dependencies() -> dict:
    """Check database and Redis connectivity. Returns check results dict."""
    settings = get_settings()
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if settings.SYNC_RATE_LIMIT_BACKEND != "redis":
        checks["redis"] = "unused"
        return checks

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    return checks


def _healthy(checks: dict) -> bool:
    return checks.get("database") == "ok" and checks.get("redis") in ("ok", "unused")


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB and Redis connectivity.

    Returns 200 if all pass, 503 if any critical dependency fails. The
    sync worker's halted flag is reported but does not fail readiness,
    since webhooks and operator endpoints keep working without it.
    """
    checks = await _check_dependencies()
    processor = getattr(request.app.state, "queue_processor", None)
    if processor is not None:
        checks["sync_worker"] = "halted" if processor.halted else "ok"
    else:
        checks["sync_worker"] = "not_configured"

    all_healthy = _healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )


@router.get("/health/startup")
async def startup_check():
    """Startup check: same dependencies as readiness, probed during initial startup."""
    checks = await _check_dependencies()
    all_healthy = _healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "started" if all_healthy else "starting",
            "checks": checks,
        },
    )
