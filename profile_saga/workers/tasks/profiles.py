"""Celery tasks hosting the profile saga and the preference-migration consumer."""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from typing import Any, TypeVar

import redis.asyncio as aioredis
from celery.exceptions import SoftTimeLimitExceeded
from pydantic import ValidationError

from profile_saga.core.config import settings
from profile_saga.core.database import async_session_maker, engine
from profile_saga.core.errors import TransientTransportError
from profile_saga.core.logging_config import correlation_id_var
from profile_saga.schemas.preferences import MigrationBatch
from profile_saga.services.migration_service import MigrationService
from profile_saga.services.profile_store import SqlProfileStore
from profile_saga.services.queue_service import RedisQueue
from profile_saga.workers.activities import DefaultSagaActivities
from profile_saga.workers.celery_app import BaseTask, celery_app
from profile_saga.workers.journal import RedisStepJournal
from profile_saga.workers.saga import (
    EmailValidationProcess,
    EmailVerificationProcess,
    StepRunner,
    UpsertedProfileSaga,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound of messages handled by one drain run.
MIGRATION_DRAIN_BATCH = 100
DRAIN_SOFT_TIME_LIMIT = 240
DRAIN_TIME_LIMIT = 300


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a fresh event loop, disposing DB connections after.

    asyncpg connections are bound to the loop that created them, so pooled
    connections must not outlive the per-task loop.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


def _redis_client() -> aioredis.Redis:
    return aioredis.from_url(str(settings.redis_url), decode_responses=True)  # type: ignore[no-untyped-call]


# ---------------------------------------------------------------------------
# Upserted profile saga
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.profiles.run_upserted_profile_saga",
    base=BaseTask,
    bind=True,
)
def run_upserted_profile_saga(self: BaseTask, event: dict[str, Any]) -> dict[str, Any]:
    """Run the saga for one profile change event.

    The Celery task id is the saga id: it stays the same across retries, so
    the step journal carries over from one attempt to the next.
    """
    saga_id = self.request.id or uuid.uuid4().hex
    return _run_async(_run_upserted_profile_saga_async(saga_id, event))


async def _run_upserted_profile_saga_async(
    saga_id: str,
    event: dict[str, Any],
    redis: aioredis.Redis | None = None,
) -> dict[str, Any]:
    """Async implementation of the saga task."""
    correlation_id_var.set(saga_id)
    client = redis or _redis_client()
    try:
        saga = UpsertedProfileSaga(
            DefaultSagaActivities(client),
            RedisStepJournal(client, saga_id, settings.saga_journal_ttl_seconds),
            saga_id=saga_id,
        )
        result = await saga.run(event)
        return result.model_dump(mode="json")
    finally:
        if redis is None:
            await client.aclose()


# ---------------------------------------------------------------------------
# Email validation and verification processes (restart without a profile change)
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.profiles.run_email_validation_process",
    base=BaseTask,
    bind=True,
)
def run_email_validation_process(self: BaseTask, fiscal_code: str, email: str) -> dict[str, Any]:
    """Issue a new validation token and email it."""
    process_id = self.request.id or uuid.uuid4().hex
    return _run_async(_run_email_validation_process_async(process_id, fiscal_code, email))


async def _run_email_validation_process_async(
    process_id: str,
    fiscal_code: str,
    email: str,
    redis: aioredis.Redis | None = None,
) -> dict[str, Any]:
    """Async implementation of the email validation task."""
    correlation_id_var.set(process_id)
    client = redis or _redis_client()
    try:
        runner = StepRunner(
            RedisStepJournal(client, process_id, settings.saga_journal_ttl_seconds)
        )
        process = EmailValidationProcess(DefaultSagaActivities(client), runner)
        token_id = await process.run(fiscal_code, email)
        return {"status": "sent", "token_id": token_id}
    finally:
        if redis is None:
            await client.aclose()


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.profiles.run_email_verification_process",
    base=BaseTask,
    bind=True,
)
def run_email_verification_process(
    self: BaseTask, fiscal_code: str, email: str
) -> dict[str, Any]:
    """Issue a verification token for the profile and email the link."""
    process_id = self.request.id or uuid.uuid4().hex
    return _run_async(_run_email_verification_process_async(process_id, fiscal_code, email))


async def _run_email_verification_process_async(
    process_id: str,
    fiscal_code: str,
    email: str,
    redis: aioredis.Redis | None = None,
) -> dict[str, Any]:
    correlation_id_var.set(process_id)
    client = redis or _redis_client()
    try:
        runner = StepRunner(
            RedisStepJournal(client, process_id, settings.saga_journal_ttl_seconds)
        )
        process = EmailVerificationProcess(DefaultSagaActivities(client), runner)
        token_id = await process.run(fiscal_code, email)
        return {"status": "sent", "token_id": token_id}
    finally:
        if redis is None:
            await client.aclose()


# ---------------------------------------------------------------------------
# Services preferences migration
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.profiles.drain_migration_queue",
    base=BaseTask,
    bind=True,
    soft_time_limit=DRAIN_SOFT_TIME_LIMIT,
    time_limit=DRAIN_TIME_LIMIT,
)
def drain_migration_queue(self: BaseTask) -> dict[str, Any]:  # noqa: ARG001
    """Consume pending migration batches from the Redis queue."""
    return _run_async(_drain_migration_queue_async())


async def _drain_migration_queue_async(
    redis: aioredis.Redis | None = None,
) -> dict[str, Any]:
    """Async implementation of the queue drain.

    Each batch stays in the processing list until it is applied, so a run
    that dies mid-batch loses nothing: the next run recovers it first. A
    batch that fails is released to the tail of the queue; undecodable
    messages are dropped. Applying a batch twice is harmless.
    """
    client = redis or _redis_client()
    queue = RedisQueue(client)
    queue_name = settings.migrate_preferences_queue
    processed = failed = invalid = 0
    try:
        await queue.recover(queue_name)
        # Only what was pending at start, so released batches wait for the next run.
        pending = min(await queue.length(queue_name), MIGRATION_DRAIN_BATCH)
        for _ in range(pending):
            message = await queue.claim(queue_name)
            if message is None:
                break
            try:
                batch = MigrationBatch.model_validate(message.payload)
            except ValidationError as e:
                logger.error("Invalid migration batch dropped: error=%s", e)
                await queue.ack(queue_name, message)
                invalid += 1
                continue

            try:
                async with async_session_maker() as db:
                    result = await MigrationService(SqlProfileStore(db)).apply(batch)
            except SoftTimeLimitExceeded:
                raise
            except Exception:
                logger.exception(
                    "Migration batch failed, released: fiscal_code=%s", batch.fiscal_code
                )
                failed += 1
                try:
                    await queue.release(queue_name, message)
                except TransientTransportError as e:
                    # Still claimed; the next run recovers it.
                    logger.error(
                        "Cannot release batch: fiscal_code=%s error=%s", batch.fiscal_code, e
                    )
                continue

            await queue.ack(queue_name, message)
            logger.info(
                "Migration batch applied: fiscal_code=%s created=%s already_existing=%s",
                batch.fiscal_code,
                result.created,
                result.already_existing,
            )
            processed += 1
    finally:
        if redis is None:
            await client.aclose()

    if processed or failed or invalid:
        logger.info(
            "Migration queue drained: processed=%s failed=%s invalid=%s",
            processed,
            failed,
            invalid,
        )
    return {"status": "drained", "processed": processed, "failed": failed, "invalid": invalid}
