"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from profile_saga.core.config import settings
from profile_saga.core.database import get_async_session
from profile_saga.services.profile_service import ProfileService
from profile_saga.services.profile_store import ProfileStore, SqlProfileStore
from profile_saga.services.token_service import TokenIssuer


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_async_session():
        yield session


@lru_cache
def redis_pool() -> aioredis.ConnectionPool:
    """Process-wide pool; the API only touches Redis for health checks."""
    return aioredis.ConnectionPool.from_url(str(settings.redis_url), decode_responses=True)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool())
    try:
        yield client
    finally:
        await client.aclose()


DBSession = Annotated[AsyncSession, Depends(get_db)]
RedisDep = Annotated[aioredis.Redis, Depends(get_redis)]


def get_profile_store(db: DBSession) -> ProfileStore:
    return SqlProfileStore(db)


def get_profile_service(
    store: Annotated[ProfileStore, Depends(get_profile_store)],
) -> ProfileService:
    return ProfileService(store)


def get_token_issuer(db: DBSession) -> TokenIssuer:
    return TokenIssuer(db)


ProfileServiceDep = Annotated[ProfileService, Depends(get_profile_service)]
TokenIssuerDep = Annotated[TokenIssuer, Depends(get_token_issuer)]

__all__ = [
    "DBSession",
    "ProfileServiceDep",
    "RedisDep",
    "TokenIssuerDep",
    "get_db",
    "get_profile_service",
    "get_profile_store",
    "get_redis",
    "get_token_issuer",
]
