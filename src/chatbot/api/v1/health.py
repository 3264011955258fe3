"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
orchestrator uses these to decide whether the process is alive and
whether it can take traffic.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.chatbot.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check queue backend, Qdrant, and telemetry database connectivity."""
    checks: dict = {"queue": "ok", "qdrant": "ok", "database": "ok"}

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        return {"queue": "error", "qdrant": "error", "database": "error", "error": "pipeline not initialized"}

    # Check queue backend (Redis PING)
    try:
        if not await pipeline.backend.ping():
            checks["queue"] = "error"
            checks["queue_error"] = "PING did not return PONG"
    except Exception as e:
        checks["queue"] = "error"
        checks["queue_error"] = str(e)

    # Check Qdrant
    try:
        await pipeline.store.ping()
    except Exception as e:
        checks["qdrant"] = "error"
        checks["qdrant_error"] = str(e)

    # Check telemetry database (non-critical)
    if pipeline.engine is None:
        checks["database"] = "not_configured"
    else:
        try:
            async with pipeline.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies queue, Qdrant, and database connectivity.

    Returns 200 if the queue and Qdrant are reachable, 503 otherwise.
    A telemetry database outage degrades status but not readiness.
    """
    checks = await _check_dependencies(request)
    ready = checks.get("queue") == "ok" and checks.get("qdrant") == "ok"
    degraded = checks.get("database") == "error"

    if not ready:
        overall = "not_ready"
    elif degraded:
        overall = "degraded"
    else:
        overall = "ready"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": overall, "checks": checks},
    )
