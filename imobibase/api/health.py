"""Health check endpoints.

/health/live   - Liveness probe: is the process up?
/health/ready  - Readiness probe: is the database reachable and the worker pool running?

These are public endpoints - no auth required.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from imobibase.core.timeutil import isoformat, utcnow
from imobibase.database import get_engine

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict[str, str | None]:
    """Always 200 while the process is running."""
    return {"status": "ok", "timestamp": isoformat(utcnow())}


@router.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    checks: dict[str, Any] = {}
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError, RuntimeError) as exc:
        log.warning("health.database_unavailable", error=str(exc))
        checks["database"] = "error"

    pool = getattr(request.app.state, "worker_pool", None)
    checks["workers"] = "ok" if pool is not None and pool.running else "stopped"

    is_ready = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "status": "ready" if is_ready else "not_ready",
            **checks,
            "timestamp": isoformat(utcnow()),
        },
    )
