"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from audit_backend.config import settings
from audit_backend.database import Database, get_db
from audit_backend.models import HealthStatus

router = APIRouter(tags=["monitoring"])

START_TIME = time.time()


def _audit_log_state(request: Request) -> str:
    if getattr(request.app.state, "audit_service", None) is None:
        return "not started"
    return "configured" if settings.audit_log_api_token else "no token"


@router.get("/health", response_model=HealthStatus)
async def health_check(request: Request, db: Database = Depends(get_db)):
    """
    Database connectivity, audit log client state, uptime and version.

    The audit log state is informational; only the database decides
    healthy vs unhealthy.
    """
    db_healthy = await db.health_check()

    return HealthStatus(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        audit_log=_audit_log_state(request),
        uptime_seconds=time.time() - START_TIME,
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, db: Database = Depends(get_db)):
    """Ready once the database answers and the audit log client exists."""
    reasons = []
    if not await db.health_check():
        reasons.append("database disconnected")
    if getattr(request.app.state, "audit_service", None) is None:
        reasons.append("audit log client not started")

    if reasons:
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "reason": "; ".join(reasons)}
        )
    return {"status": "ready"}


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics: audit service request counts and latency,
    verification verdicts and published root resolution sources.
    """
    if not settings.enable_metrics:
        return Response(status_code=404)

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
