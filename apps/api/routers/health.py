"""
Health check endpoints.
"""

from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import PROVIDER_KEY_SETTINGS, missing_service_settings, settings
from database import engine

router = APIRouter()


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {e}"
    return "up"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as e:
        return f"down: {e}"
    finally:
        await client.aclose()
    return "up"


def _credential_status() -> Dict[str, str]:
    status = {
        provider: "configured" if getattr(settings, setting_name, "") else "missing"
        for provider, setting_name in PROVIDER_KEY_SETTINGS.items()
    }
    status["supabase"] = "configured" if settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY else "missing"
    return status


@router.get("/health")
async def health_check():
    """
    Database, Redis and credential status.

    Redis only backs rate limiting, so an outage there degrades the service
    without failing requests.
    """
    database = await _probe_database()
    cache = await _probe_redis()
    return {
        "status": "healthy" if database == "up" and cache == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": cache,
        "credentials": _credential_status(),
        "default_pipeline": settings.DEFAULT_PIPELINE,
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once auth, storage and provider credentials are all set."""
    missing = missing_service_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
