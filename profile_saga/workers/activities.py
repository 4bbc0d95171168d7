"""Production ``SagaActivities``: database, Redis and HTTP transports.

Each activity opens its own session so a retried step never reuses a
session left in a failed transaction.
"""

from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_saga.core.database import async_session_maker
from profile_saga.schemas.subscription import SubscriptionEvent
from profile_saga.services.email_service import EmailService
from profile_saga.services.message_service import WelcomeMessageKind, WelcomeMessageService
from profile_saga.services.profile_store import SqlProfileStore
from profile_saga.services.queue_service import RedisQueue
from profile_saga.services.subscription_feed_service import SubscriptionFeedService
from profile_saga.services.token_service import TokenIssuer


class DefaultSagaActivities:
    def __init__(
        self,
        redis: aioredis.Redis,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        email_service: EmailService | None = None,
        message_service: WelcomeMessageService | None = None,
    ) -> None:
        self.queue = RedisQueue(redis)
        self.session_maker = session_maker
        self.email_service = email_service or EmailService()
        self.message_service = message_service or WelcomeMessageService()

    async def create_validation_token(self, fiscal_code: str, email: str) -> dict[str, Any]:
        async with self.session_maker() as db:
            issued = await TokenIssuer(db).issue_validation_token(fiscal_code, email)
        return issued.model_dump(mode="json")

    async def send_validation_email(self, email: str, token: str) -> str | None:
        return await self.email_service.send_validation_email(email, token)

    async def create_verification_token(self, fiscal_code: str) -> dict[str, Any]:
        async with self.session_maker() as db:
            issued = await TokenIssuer(db).issue_verification_token(fiscal_code)
        return issued.model_dump(mode="json")

    async def send_verification_email(self, email: str, token: str) -> str | None:
        return await self.email_service.send_verification_email(email, token)

    async def send_welcome_message(self, fiscal_code: str, kind: WelcomeMessageKind) -> str | None:
        return await self.message_service.send_welcome_message(fiscal_code, kind)

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[dict[str, Any]]:
        async with self.session_maker() as db:
            preferences = await SqlProfileStore(db).get_service_preferences(
                fiscal_code, settings_version
            )
        return [p.model_dump(mode="json") for p in preferences]

    async def publish_feed_event(self, event: SubscriptionEvent) -> bool:
        async with self.session_maker() as db:
            return await SubscriptionFeedService(db).publish(event)

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None:
        await self.queue.enqueue(queue_name, payload)
