"""Step journals: durable record of saga step outcomes, keyed by saga id.

When Celery retries a saga, the coordinator runs again from the top. Steps
already recorded here are not executed again; their recorded outcome is
returned instead, so the coordinator makes the same decisions it made
the first time.
"""

from typing import Any, Protocol

import redis.asyncio as aioredis

from profile_saga.schemas.common import BaseSchema

JOURNAL_KEY_PREFIX = "saga:journal:"


class StepRecord(BaseSchema):
    """Outcome of one saga step. ``result`` must be JSON-serializable."""

    ok: bool
    result: Any = None
    error: str | None = None
    attempts: int = 1


class StepJournal(Protocol):
    async def get(self, step_id: str) -> StepRecord | None: ...

    async def record(self, step_id: str, record: StepRecord) -> None: ...


class InMemoryStepJournal:
    """Journal held in a dict; used for one-shot runs and in tests."""

    def __init__(self) -> None:
        self.records: dict[str, StepRecord] = {}

    async def get(self, step_id: str) -> StepRecord | None:
        return self.records.get(step_id)

    async def record(self, step_id: str, record: StepRecord) -> None:
        self.records[step_id] = record


class RedisStepJournal:
    """Journal stored as one Redis hash per saga, expiring after ``ttl_seconds``."""

    def __init__(self, redis: aioredis.Redis, saga_id: str, ttl_seconds: int) -> None:
        self.redis = redis
        self.key = f"{JOURNAL_KEY_PREFIX}{saga_id}"
        self.ttl_seconds = ttl_seconds

    async def get(self, step_id: str) -> StepRecord | None:
        raw = await self.redis.hget(self.key, step_id)
        if raw is None:
            return None
        return StepRecord.model_validate_json(raw)

    async def record(self, step_id: str, record: StepRecord) -> None:
        await self.redis.hset(self.key, step_id, record.model_dump_json())
        await self.redis.expire(self.key, self.ttl_seconds)

    async def steps(self) -> dict[str, StepRecord]:
        raw: dict[str, str] = await self.redis.hgetall(self.key)
        return {step_id: StepRecord.model_validate_json(value) for step_id, value in raw.items()}
