"""Health and readiness endpoints."""

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.config import settings
from src.db.database import check_db

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    from src.main import get_uptime

    engine = getattr(request.app.state, "cluster_engine", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
        "threat_analysis_running": engine.is_running if engine else False,
    }


async def _check_redis() -> bool | None:
    """None when Redis is not configured."""
    if not settings.redis_url:
        return None
    try:
        client = aioredis.from_url(settings.redis_url)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        logger.warning("redis_check_failed", exc_info=True)
        return False


@router.get("/ready")
async def ready() -> JSONResponse:
    db_ok = await check_db()
    redis_ok = await _check_redis()

    all_ready = db_ok and redis_ok is not False
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "database": db_ok,
            "redis": redis_ok,
        },
    )
