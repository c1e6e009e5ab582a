"""
Health check endpoints.
"""

from fastapi import APIRouter
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from scoring.llm import get_openai_client

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database and Redis reachability plus the active scoring backend.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "scoring_backend": "heuristic" if get_openai_client(settings.OPENAI_API_KEY) is None else "openai",
        "reanalysis_mode": settings.REANALYSIS_EXECUTION_MODE,
    }

    # Check database connection
    try:
        from database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only matters for queue mode and shared rate limits
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.REANALYSIS_EXECUTION_MODE == "queue":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
