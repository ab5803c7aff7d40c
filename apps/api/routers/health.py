"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings
from services.lifecycle_trigger import LifecycleTrigger, get_lifecycle_trigger

router = APIRouter()


@router.get("/health")
async def health_check(trigger: LifecycleTrigger = Depends(get_lifecycle_trigger)):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "lifecycle_pass_in_progress": trigger.guard.in_progress,
        "panel": "configured" if settings.PANEL_URL and settings.PANEL_API_KEY else "disabled",
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only matters for the shared lock backend
    if settings.LIFECYCLE_LOCK_BACKEND == "redis":
        try:
            r = redis.from_url(settings.REDIS_URL)
            await r.ping()
            await r.aclose()
            health_status["redis"] = "up"
            # The lock may be held by another API or worker process.
            health_status["lifecycle_pass_in_progress"] = await trigger.guard.is_locked()
        except Exception as e:
            health_status["redis"] = f"down: {str(e)}"
            health_status["status"] = "degraded"
    else:
        health_status["redis"] = "not_required"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.CRON_SECRET:
        missing.append("CRON_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
