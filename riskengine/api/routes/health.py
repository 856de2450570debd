"""Health and readiness endpoints."""

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from riskengine.config import settings
from riskengine.db.database import check_db

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from riskengine.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


async def _redis_ok() -> bool:
    if settings.cache_backend != "redis":
        return True
    try:
        client = aioredis.from_url(settings.redis_url)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return True
    except Exception:
        logger.warning("redis_check_failed")
        return False


@router.get("/ready")
async def ready() -> JSONResponse:
    db_ok = await check_db()
    redis_ok = await _redis_ok()

    all_ready = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "database": db_ok,
            "redis": redis_ok,
        },
    )
