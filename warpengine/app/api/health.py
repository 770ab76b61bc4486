############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# health.py: Health check and Prometheus metrics endpoints
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from warpengine.app.core.warps.sweeper import get_sweeper
from warpengine.app.db.session import get_session_factory
from warpengine.app.logging_config import get_logger
from warpengine.app.settings import get_settings

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/alivecheck")
async def liveness_probe() -> Dict[str, str]:
    """Liveness probe - returns 200 while the process is up."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health")
async def health() -> Dict[str, Any]:
    """
    Readiness summary.

    Checks:
    - Database connectivity
    - Reconciliation sweeper state and last sweep counts
    """
    settings = get_settings()
    checks: Dict[str, Any] = {"database": False}

    try:
        async with get_session_factory()() as db:
            await db.execute(text("SELECT 1"))
            checks["database"] = True
    except Exception as e:
        logger.warning("health_database_unreachable", error=str(e))

    sweeper = get_sweeper()
    sweep: Dict[str, Any] = {
        "enabled": settings.sweep_enabled,
        "running": bool(sweeper and sweeper.running),
    }
    if sweeper and sweeper.last_run_at:
        sweep["last_run_at"] = sweeper.last_run_at.isoformat()
        sweep["last_report"] = sweeper.last_report.as_dict()

    return {
        "status": "ok" if checks["database"] else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "checks": checks,
        "sweeper": sweep,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
