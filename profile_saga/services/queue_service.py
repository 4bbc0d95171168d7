"""Redis-backed application queues (migration batches, profile-change notifications)."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from profile_saga.core.errors import TransientTransportError

logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "queue:"
PROCESSING_SUFFIX = ":processing"


class Queue(Protocol):
    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class ClaimedMessage:
    """A message moved to the processing list; ``raw`` identifies it there."""

    raw: str
    payload: Any


class RedisQueue:
    """FIFO queues stored as Redis lists of JSON documents.

    Consumers ``claim`` a message, which moves it to ``<queue>:processing``,
    and ``ack`` or ``release`` it once handled. A consumer that dies in
    between leaves the message in the processing list, and ``recover`` puts
    it back at the head of the queue.
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    @staticmethod
    def _key(queue_name: str) -> str:
        return f"{QUEUE_KEY_PREFIX}{queue_name}"

    @classmethod
    def _processing_key(cls, queue_name: str) -> str:
        return f"{cls._key(queue_name)}{PROCESSING_SUFFIX}"

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None:
        try:
            await self.redis.rpush(self._key(queue_name), json.dumps(payload, default=str))
        except RedisError as e:
            raise TransientTransportError(f"Cannot enqueue on {queue_name}: {e}") from e
        logger.debug("Enqueued message: queue=%s", queue_name)

    async def claim(self, queue_name: str) -> ClaimedMessage | None:
        """Move the oldest message to the processing list and return it."""
        try:
            raw = await self.redis.lmove(
                self._key(queue_name), self._processing_key(queue_name), "LEFT", "RIGHT"
            )
        except RedisError as e:
            raise TransientTransportError(f"Cannot claim from {queue_name}: {e}") from e
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = None
        return ClaimedMessage(raw=raw, payload=payload)

    async def ack(self, queue_name: str, message: ClaimedMessage) -> None:
        try:
            await self.redis.lrem(self._processing_key(queue_name), 1, message.raw)
        except RedisError as e:
            raise TransientTransportError(f"Cannot ack on {queue_name}: {e}") from e

    async def release(self, queue_name: str, message: ClaimedMessage) -> None:
        """Put a claimed message back at the tail of the queue."""
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(self._key(queue_name), message.raw)
                pipe.lrem(self._processing_key(queue_name), 1, message.raw)
                await pipe.execute()
        except RedisError as e:
            raise TransientTransportError(f"Cannot release on {queue_name}: {e}") from e

    async def recover(self, queue_name: str) -> int:
        """Return every message left in the processing list to the head of the queue."""
        recovered = 0
        try:
            while await self.redis.lmove(
                self._processing_key(queue_name), self._key(queue_name), "RIGHT", "LEFT"
            ):
                recovered += 1
        except RedisError as e:
            raise TransientTransportError(f"Cannot recover {queue_name}: {e}") from e
        if recovered:
            logger.warning(
                "Recovered unfinished messages: queue=%s count=%s", queue_name, recovered
            )
        return recovered

    async def length(self, queue_name: str) -> int:
        return int(await self.redis.llen(self._key(queue_name)))

    async def processing_length(self, queue_name: str) -> int:
        return int(await self.redis.llen(self._processing_key(queue_name)))
