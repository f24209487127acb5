"""
Health endpoints for the FinQuest API.

Lightweight probes for operational monitoring; no secrets are exposed.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from finquest.core.config import settings
from finquest.core.database import check_connection

logger = logging.getLogger("finquest")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: database connectivity when a database is configured."""
    if not settings.DATABASE_URL:
        return {"status": "ok", "storage": "memory"}
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok", "storage": "database"}
