"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "contact-sync"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness: database pool reachable and contact sync wired."""
    checks = {}

    t0 = time.time()
    try:
        db_health = await db_health_check()
        checks["database"] = {
            "ok": bool(db_health.get("healthy", False)),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if not checks["database"]["ok"]:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    except Exception as e:
        checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    container = getattr(request.app.state, "contact_sync", None)
    checks["contact_sync"] = {
        "ok": container is not None,
        "platforms": list(container.adapters) if container is not None else [],
    }

    overall_ok = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"status": "ready" if overall_ok else "not_ready", "checks": checks},
    )
