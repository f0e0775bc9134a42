import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from locateme.db import SessionLocal, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        - status: overall health status
        - timestamp: current server time
        - database: position store connection status
        - cache: redis connection status
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "locateme-backend",
        "version": "1.0.0",
    }

    try:
        get_engine()
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except SQLAlchemyError as e:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        health_status["error"] = str(e)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health_status)

    # Cache loss degrades the sidebar but does not make the service unhealthy
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        health_status["cache"] = "not configured"
    else:
        try:
            await redis_client.ping()
            health_status["cache"] = "connected"
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            health_status["cache"] = "disconnected"
            health_status["cache_error"] = str(e)

    return health_status


@router.get("/readiness", status_code=status.HTTP_200_OK)
async def readiness_check(request: Request):
    """Returns 200 once the device service has been wired by the lifespan."""
    ready = getattr(request.app.state, "device_service", None) is not None
    if not ready:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"ready": False})
    return {"ready": True}


@router.get("/liveness", status_code=status.HTTP_200_OK)
async def liveness_check():
    return {"alive": True}
