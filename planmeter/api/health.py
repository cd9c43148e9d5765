"""
Health endpoints for the planmeter service.

Liveness never touches the database; readiness probes the connection and the
ledger tables.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from planmeter.core.database import check_connection, get_engine

logger = logging.getLogger("planmeter")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "plans",
    "plan_versions",
    "features",
    "plan_features",
    "subscriptions",
    "subscription_feature_usages",
    "subscription_feature_credits",
    "subscription_feature_locks",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
