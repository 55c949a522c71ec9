# WORKFLOW: Health check endpoints for monitoring and operational status.
# Used by: Load balancers, monitoring systems, operational dashboards
# Endpoints:
# 1. /healthz - Basic health check (always returns healthy)
# 2. /readyz - Readiness check: database reachable and a non-empty reference snapshot loaded
# 3. /livez - Liveness check for Kubernetes
#
# Readiness flow: Readiness check -> Database connectivity + snapshot counts -> Ready/Not ready

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from api.dependencies import get_reference_db, get_tariff_engine
from core.config import settings
from db.session import check_db_connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """
    Basic health check endpoint.

    Returns:
        Health status of the API
    """
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.version,
        "environment": settings.environment,
    }


@router.get("/readyz")
def readiness_check(db_engine=Depends(get_reference_db), engine=Depends(get_tariff_engine)):
    """
    Readiness check endpoint.

    The service is ready when the reference database answers and the loaded
    snapshot holds at least one tariff rule.
    """
    snapshot = engine.snapshot
    checks = {
        "database": check_db_connection(db_engine),
        "reference_data": snapshot.counts()["tariff_rules"] > 0,
    }
    is_ready = all(checks.values())
    if not is_ready:
        logger.warning(f"Readiness check failed: {checks}")

    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if is_ready else "not_ready",
            "timestamp": datetime.utcnow().isoformat(),
            "checks": checks,
            "snapshot_version": snapshot.version,
            "version": settings.version,
        },
    )


@router.get("/livez")
async def liveness_check():
    """Liveness check used by Kubernetes."""
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat(),
    }
