"""Health check endpoints for monitoring application status."""

import time

from fastapi import APIRouter, Depends, status

from app.api.dependencies import get_match_counter
from app.core.config import settings
from app.core.redis import redis_manager
from app.db.base import DatabaseHealthCheck
from app.scheduler.scheduler import scheduler_service
from app.services.match_counter import MatchCountBatcher

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    status_code=status.HTTP_200_OK,
    summary="Get system health status",
    response_description="Health status of all system components"
)
async def health_check(match_counter: MatchCountBatcher = Depends(get_match_counter)):
    """Check health of all system components."""
    health_status = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "timestamp": time.time(),
        "components": {}
    }

    database = await DatabaseHealthCheck.check_connection()
    health_status["components"]["database"] = database
    if database["status"] != "healthy":
        health_status["status"] = "degraded"

    # Check Redis connection if enabled
    if redis_manager.is_enabled:
        try:
            start_time = time.time()
            result = await redis_manager.ping()
            latency = round((time.time() - start_time) * 1000, 2)

            if result:
                health_status["components"]["redis"] = {
                    "status": "healthy",
                    "latency_ms": latency
                }
            else:
                health_status["status"] = "degraded"
                health_status["components"]["redis"] = {
                    "status": "unhealthy",
                    "error": "Redis ping failed"
                }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["redis"] = {
                "status": "unhealthy",
                "error": str(e)
            }
    else:
        health_status["components"]["redis"] = {"status": "disabled"}

    health_status["components"]["scheduler"] = scheduler_service.get_status()
    health_status["components"]["match_counter"] = {
        "pending_rules": len(match_counter.pending),
        "flush_interval_seconds": match_counter.flush_interval,
    }

    return health_status


@router.get(
    "/health/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    response_description="Application liveness status"
)
async def liveness_probe():
    """Simple check that application is running."""
    return {"alive": True}
