"""Health endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint.

    Returns:
        Status, timestamp in ISO8601 format and backing-service status
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        from evofit_auth.database import health_check as db_health_check

        db_healthy = await db_health_check()
        health_status["database"] = "healthy" if db_healthy else "unhealthy"
    except Exception:
        health_status["database"] = "unavailable"

    try:
        from evofit_auth.services.redis_service import get_redis

        redis_client = await get_redis()
        health_status["redis"] = "healthy" if redis_client else "unavailable"
    except Exception:
        health_status["redis"] = "unavailable"

    if health_status["database"] != "healthy":
        health_status["status"] = "degraded"

    return health_status
