"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import engine
from services.payments import payment_capabilities

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database and Redis reachability plus which integrations are configured.
    """
    payments = payment_capabilities()
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "analysis_engine": "configured" if settings.ANALYSIS_ENGINE_TOKEN else "missing",
        "payments": {name: "configured" if ok else "missing" for name, ok in payments.items()},
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database health check failed: %s", e)
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL, socket_timeout=1.0)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except (RedisError, OSError) as e:
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.ANALYSIS_ENGINE_TOKEN:
        missing.append("ANALYSIS_ENGINE_TOKEN")
    if not any(payment_capabilities().values()):
        missing.append("PAYPAL_CLIENT_ID or RAZORPAY_KEY_ID")

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
