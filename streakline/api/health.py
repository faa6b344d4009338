"""
Liveness, readiness, cache health and metrics exposition.

None of these endpoints require auth or expose configuration values.
"""

import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from streakline.api.deps import get_container
from streakline.container import Container
from streakline.core.metrics import METRICS

logger = logging.getLogger("streakline")

router = APIRouter(prefix="/v1/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "daily_tasks",
    "task_evidence",
    "streaks",
    "user_badges",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(container: Container = Depends(get_container)):
    """Readiness: database reachable and schema present."""
    try:
        with container.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        inspector = inspect(container.engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error("readyz.database_unreachable", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("readyz.missing_tables", extra={"missing": missing})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}


@router.get("/cache")
def cache_health(container: Container = Depends(get_container)):
    """Cache tier status. Always 200: a down primary is degraded, not broken."""
    status = container.cache.status()
    return {"status": "ok" if status["primary"] == "healthy" else "degraded", **status}


@router.get("/batch")
def batch_health(container: Container = Depends(get_container)):
    return container.scheduler.status()


@root_router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
