"""
Health and readiness endpoints

/health is liveness only. /ready pings the database and, when configured,
reports not-ready while any circuit is open.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from labelflow import __version__
from labelflow.api.deps import get_services
from labelflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check(services: ServiceContainer = Depends(get_services)):
    """
    Readiness check with an actual DB ping and circuit state.
    Returns 503 if the database is unreachable or a circuit is open.
    """
    ready = {
        "status": "ready",
        "database": "unknown",
        "open_circuits": services.breakers.open_circuits(),
        "circuits": services.breakers.get_metrics(),
        "background_jobs": services.jobs.running,
    }

    try:
        async with services.store.session() as db:
            await db.execute(text("SELECT 1"))
        ready["database"] = "connected"
    except Exception as e:
        logger.error(f"[Health] Database ping failed: {type(e).__name__}")
        ready["database"] = f"error: {type(e).__name__}"
        ready["status"] = "not_ready"
        return JSONResponse(status_code=503, content=ready)

    if ready["open_circuits"] and services.settings.READINESS_REQUIRES_CLOSED_CIRCUITS:
        ready["status"] = "not_ready"
        return JSONResponse(status_code=503, content=ready)

    return ready
