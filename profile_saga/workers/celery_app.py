"""Celery application: the host for profile sagas and the migration consumer."""

from typing import Any

from celery import Celery
from celery.exceptions import SoftTimeLimitExceeded
from celery.signals import setup_logging as celery_setup_logging
from redis.exceptions import ConnectionError as RedisConnectionError

from profile_saga.core.config import settings
from profile_saga.core.errors import (
    ExhaustedRetriesError,
    TransientStoreError,
    TransientTransportError,
)
from profile_saga.core.logging_config import setup_logging

celery_app = Celery(
    "profile_saga",
    broker=str(settings.redis_url),
    backend=str(settings.redis_url),
    include=["profile_saga.workers.tasks.profiles"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # No global time limit: a saga runs one RetryPolicy-bounded step per feed
    # event, so its length grows with the block-list. Short tasks set their own.
    # Redeliver sagas interrupted by a worker crash; the journal skips done steps
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=24 * 3600,
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    task_default_queue="default",
    task_routes={
        "tasks.profiles.*": {"queue": "profiles"},
    },
    beat_schedule={
        "drain-migrate-services-preferences": {
            "task": "tasks.profiles.drain_migration_queue",
            "schedule": settings.migration_drain_interval_seconds,
        },
    },
)


@celery_setup_logging.connect
def _configure_worker_logging(**_kwargs: Any) -> None:
    """Use the JSON log format in workers instead of Celery's default."""
    setup_logging(debug=settings.debug)


class BaseTask(celery_app.Task):  # type: ignore[misc, name-defined]
    """Retries the whole task when a required step gave up or a backend is down.

    Invalid input and rejected requests are not retried: the saga reports them
    in its result instead of raising. A task stopped by its soft time limit is
    retried too and resumes from its journal or claimed messages.
    """

    abstract = True
    autoretry_for = (
        ExhaustedRetriesError,
        TransientStoreError,
        TransientTransportError,
        RedisConnectionError,
        SoftTimeLimitExceeded,
    )
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = settings.saga_max_task_retries
