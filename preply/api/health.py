"""
Health endpoints.

Lightweight checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from preply.core.database import check_connection, missing_tables

logger = logging.getLogger("preply")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness check: store connectivity + required tables."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "store not configured"})

    if not check_connection(store.engine):
        logger.error("readyz.database_unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    missing = missing_tables(store.engine)
    if missing:
        logger.warning("readyz.missing_tables", extra={"tables": ",".join(missing)})
        return JSONResponse(
            status_code=503,
            content={"status": "error", "detail": f"missing tables: {', '.join(missing)}"},
        )

    return {"status": "ok"}
