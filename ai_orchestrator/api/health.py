"""Health check endpoints.

/health/live   - Liveness check: is the process up?
/health/ready  - Readiness check: is the orchestrator wired (and the DB reachable)?

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from sqlalchemy import text

from ai_orchestrator.database import get_engine

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict:
    """Liveness check - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> dict:
    """Readiness check - orchestrator present, DB reachable when persistence is on."""
    orchestrator_ready = getattr(request.app.state, "orchestrator", None) is not None
    settings = getattr(request.app.state, "settings", None)

    db_status = "disabled"
    if settings is not None and settings.persist_usage:
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "ok"
        except Exception as exc:
            db_status = f"error: {exc}"

    is_ready = orchestrator_ready and db_status in ("ok", "disabled")
    return {
        "status": "ready" if is_ready else "not_ready",
        "orchestrator": "ok" if orchestrator_ready else "missing",
        "database": db_status,
        "timestamp": datetime.now(UTC).isoformat(),
    }
