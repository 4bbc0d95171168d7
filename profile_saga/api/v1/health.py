"""Health check endpoints."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from profile_saga.core.config import settings
from profile_saga.core.deps import DBSession, RedisDep
from profile_saga.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_dependency(name: str, check: Callable[[], Awaitable[Any]]) -> str:
    try:
        await check()
    except Exception as e:
        logger.warning("Health check %s failed: %s", name, e)
        return f"unhealthy: {e}"
    return "healthy"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DBSession, redis: RedisDep) -> HealthResponse:
    """
    Report database and Redis connectivity.

    Redis carries the Celery broker, the saga journals and the outbound
    queues, so a Redis outage stalls every side effect even though writes
    still succeed. Always answers 200; callers read ``status``.
    """
    checks = {
        "database": await _check_dependency("database", lambda: db.execute(text("SELECT 1"))),
        "redis": await _check_dependency("redis", redis.ping),
    }
    healthy = all(result == "healthy" for result in checks.values())
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.version,
        environment=settings.environment,
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
