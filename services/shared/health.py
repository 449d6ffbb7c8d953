"""Health check endpoints for FastAPI services.

``/health`` is a liveness probe, ``/ready`` checks the database and, when
configured, Redis.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine


def check_database_health(engine: Optional[Engine]) -> bool:
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception:
        return False


async def check_redis_health(redis_url: Optional[str], timeout: float = 1.0) -> Optional[bool]:
    """Ping Redis.

    Returns:
        True when reachable, False when configured but unreachable,
        None when Redis is not configured
    """
    if not redis_url or not redis_url.strip():
        return None
    client = aioredis.from_url(redis_url)
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout)
        return True
    except Exception:
        return False
    finally:
        await client.aclose()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_health_router(
    service_name: str,
    database_engine: Optional[Engine] = None,
    redis_url: Optional[str] = None,
) -> APIRouter:
    router = APIRouter(tags=["Health"])

    @router.get("/health", status_code=status.HTTP_200_OK)
    def health():
        return {"status": "ok", "service": service_name, "timestamp": _now_iso()}

    @router.get("/ready", status_code=status.HTTP_200_OK)
    async def ready():
        checks = {
            "database": await asyncio.to_thread(check_database_health, database_engine),
            "redis": await check_redis_health(redis_url),
        }
        # redis=None means "not configured" and does not fail readiness
        all_healthy = checks["database"] and checks["redis"] is not False
        return JSONResponse(
            content={
                "status": "ready" if all_healthy else "not_ready",
                "service": service_name,
                "timestamp": _now_iso(),
                "checks": checks,
            },
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return router
