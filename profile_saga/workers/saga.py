"""Upserted-profile saga: the side effects that follow every profile write.

The coordinator is deterministic. Anything that reads the clock, draws random
bytes or talks to the outside world runs inside a journaled step, and every
decision is taken from the change event plus recorded step outcomes. Running
the coordinator again for the same saga id therefore replays the same path.

Step criticality is declared per step (``StepPolicy``) and enforced by
``StepRunner``: a REQUIRED step that exhausts its retries raises
``ExhaustedRetriesError`` and fails the saga so the host retries it; a
BEST_EFFORT step records the failure and the saga moves on.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from celery.exceptions import SoftTimeLimitExceeded
from pydantic import ValidationError

from profile_saga.core.config import settings
from profile_saga.core.errors import (
    NON_RETRYABLE_ERRORS,
    ExhaustedRetriesError,
    InvalidEventError,
)
from profile_saga.schemas.common import BaseSchema
from profile_saga.schemas.preferences import MigrationBatch, ServicePreferenceData
from profile_saga.schemas.profile import (
    ProfileChangeEvent,
    ProfileOperation,
    ServicesPreferencesSettings,
)
from profile_saga.schemas.subscription import SubscriptionEvent, SubscriptionKind
from profile_saga.schemas.token import IssuedToken
from profile_saga.services.message_service import WelcomeMessageKind, welcome_message_kinds
from profile_saga.services.migration_service import convert_blocked_channels, should_migrate
from profile_saga.services.preferences import (
    Conflict,
    has_just_enabled_inbox,
    transition_preferences,
)
from profile_saga.services.subscription_diff import plan_feed_update
from profile_saga.workers.journal import StepJournal, StepRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class StepPolicy(str, enum.Enum):
    """What a step's exhausted retries mean for the enclosing workflow."""

    REQUIRED = "required"
    BEST_EFFORT = "best_effort"


class SagaState(str, enum.Enum):
    STARTED = "STARTED"
    EMAIL_CHECK = "EMAIL_CHECK"
    WELCOME = "WELCOME"
    FEED_UPDATE = "FEED_UPDATE"
    MIGRATION = "MIGRATION"
    NOTIFY = "NOTIFY"
    DONE = "DONE"
    FAILED = "FAILED"


# Criticality of each step family, looked up by the coordinator.
STEP_POLICIES: dict[str, StepPolicy] = {
    "email_validation": StepPolicy.BEST_EFFORT,
    "email_validation.create_token": StepPolicy.REQUIRED,
    "email_validation.send_email": StepPolicy.REQUIRED,
    "email_verification.create_token": StepPolicy.REQUIRED,
    "email_verification.send_email": StepPolicy.REQUIRED,
    "welcome": StepPolicy.BEST_EFFORT,
    "feed.read_previous_preferences": StepPolicy.REQUIRED,
    "feed.publish": StepPolicy.REQUIRED,
    "migration.enqueue": StepPolicy.REQUIRED,
    "notify": StepPolicy.BEST_EFFORT,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``initial_delay * coefficient ** (attempt - 1)``."""

    initial_delay: float = 5.0
    backoff_coefficient: float = 1.5
    max_attempts: int = 10

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            initial_delay=settings.retry_initial_delay_seconds,
            backoff_coefficient=settings.retry_backoff_coefficient,
            max_attempts=settings.retry_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""
        return self.initial_delay * self.backoff_coefficient ** (attempt - 1)


@dataclass(frozen=True)
class SagaConfig:
    send_cashback_message: bool = False
    migrate_preferences_queue: str = "migrate-services-preferences"
    notify_on_queues: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls) -> "SagaConfig":
        return cls(
            send_cashback_message=settings.send_cashback_message,
            migrate_preferences_queue=settings.migrate_preferences_queue,
            notify_on_queues=tuple(settings.notify_on_queues),
        )


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


class SagaActivities(Protocol):
    """Side-effecting operations the saga drives. Results must be JSON-serializable."""

    async def create_validation_token(self, fiscal_code: str, email: str) -> dict[str, Any]: ...

    async def send_validation_email(self, email: str, token: str) -> str | None: ...

    async def create_verification_token(self, fiscal_code: str) -> dict[str, Any]: ...

    async def send_verification_email(self, email: str, token: str) -> str | None: ...

    async def send_welcome_message(
        self, fiscal_code: str, kind: WelcomeMessageKind
    ) -> str | None: ...

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[dict[str, Any]]: ...

    async def publish_feed_event(self, event: SubscriptionEvent) -> bool: ...

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Step runner
# ---------------------------------------------------------------------------


class StepRunner:
    """Executes journaled steps with retries and policy-driven failure handling."""

    def __init__(
        self,
        journal: StepJournal,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.journal = journal
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.sleep = sleep

    async def run(
        self,
        step_id: str,
        policy: StepPolicy,
        action: Callable[[], Awaitable[Any]],
    ) -> StepRecord:
        """Run ``action`` unless ``step_id`` already has a recorded outcome."""
        recorded = await self.journal.get(step_id)
        if recorded is not None:
            logger.debug("Replaying recorded step: step=%s ok=%s", step_id, recorded.ok)
            return recorded

        max_attempts = self.retry_policy.max_attempts
        last_error: Exception | None = None
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            try:
                value = await action()
            except (asyncio.CancelledError, SoftTimeLimitExceeded):
                # The host is stopping the task; its own retry resumes from the journal.
                raise
            except NON_RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning("Step failed permanently: step=%s error=%s", step_id, e)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    "Step attempt failed: step=%s attempt=%s/%s error=%s",
                    step_id,
                    attempt,
                    max_attempts,
                    e,
                )
                if attempt < max_attempts:
                    await self.sleep(self.retry_policy.delay_for(attempt))
                continue

            record = StepRecord(ok=True, result=value, attempts=attempt)
            await self.journal.record(step_id, record)
            return record

        return await self._fail(step_id, policy, attempt, last_error)

    async def run_group(
        self,
        group_id: str,
        policy: StepPolicy,
        body: Callable[[], Awaitable[Any]],
    ) -> StepRecord:
        """Run a sub-workflow whose inner steps are REQUIRED among themselves.

        The group's own ``policy`` decides whether an inner exhaustion
        propagates or is recorded as the group's failure.
        """
        recorded = await self.journal.get(group_id)
        if recorded is not None:
            return recorded
        try:
            value = await body()
        except ExhaustedRetriesError as e:
            return await self._fail(group_id, policy, e.attempts, e)
        record = StepRecord(ok=True, result=value)
        await self.journal.record(group_id, record)
        return record

    async def _fail(
        self,
        step_id: str,
        policy: StepPolicy,
        attempts: int,
        error: Exception | None,
    ) -> StepRecord:
        if policy is StepPolicy.REQUIRED:
            # Left out of the journal so a saga retry runs the step again.
            raise ExhaustedRetriesError(step_id, attempts, error)
        logger.error(
            "Best-effort step gave up: step=%s attempts=%s error=%s", step_id, attempts, error
        )
        record = StepRecord(ok=False, error=repr(error), attempts=attempts)
        await self.journal.record(step_id, record)
        return record


# ---------------------------------------------------------------------------
# Email validation sub-workflow
# ---------------------------------------------------------------------------


class EmailValidationProcess:
    """Issue a validation token, then email the confirmation link."""

    def __init__(self, activities: SagaActivities, runner: StepRunner) -> None:
        self.activities = activities
        self.runner = runner

    async def run(self, fiscal_code: str, email: str) -> str:
        issued = await self.runner.run(
            "email_validation.create_token",
            STEP_POLICIES["email_validation.create_token"],
            partial(self.activities.create_validation_token, fiscal_code, email),
        )
        token = IssuedToken.model_validate(issued.result)
        await self.runner.run(
            "email_validation.send_email",
            STEP_POLICIES["email_validation.send_email"],
            partial(self.activities.send_validation_email, email, token.token),
        )
        return token.token_id


class EmailVerificationProcess:
    """Issue a verification token bound to the profile, then email the link.

    Started on request for a profile whose email is not validated yet. Unlike
    the validation token, the verification token carries no email: confirming
    it validates whatever email the profile holds at that time.
    """

    def __init__(self, activities: SagaActivities, runner: StepRunner) -> None:
        self.activities = activities
        self.runner = runner

    async def run(self, fiscal_code: str, email: str) -> str:
        issued = await self.runner.run(
            "email_verification.create_token",
            STEP_POLICIES["email_verification.create_token"],
            partial(self.activities.create_verification_token, fiscal_code),
        )
        token = IssuedToken.model_validate(issued.result)
        await self.runner.run(
            "email_verification.send_email",
            STEP_POLICIES["email_verification.send_email"],
            partial(self.activities.send_verification_email, email, token.token),
        )
        return token.token_id


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class SagaResult(BaseSchema):
    """Summary returned by the coordinator (and stored as the Celery task result)."""

    saga_id: str
    state: SagaState = SagaState.STARTED
    states: list[SagaState] = [SagaState.STARTED]
    fiscal_code: str | None = None
    operation: ProfileOperation | None = None
    email_validation_started: bool = False
    welcome_messages_sent: list[str] = []
    feed_events: list[str] = []
    migrated_preferences: int = 0
    notifications: list[str] = []
    failed_steps: list[str] = []
    reason: str | None = None

    def advance(self, state: SagaState) -> None:
        self.state = state
        self.states.append(state)


def build_notifications(event: ProfileChangeEvent) -> list[dict[str, Any]]:
    """Profile-change notifications implied by ``event``.

    ``profile.completed`` when the inbox was just enabled;
    ``profile.service-preferences-changed`` when an already enabled inbox
    changed preferences mode.
    """
    new_profile = event.new_profile
    old_profile = event.old_profile
    just_enabled = has_just_enabled_inbox(new_profile, old_profile)
    notifications = []
    if just_enabled:
        notifications.append(
            {
                "name": "profile.completed",
                "fiscal_code": new_profile.fiscal_code,
                "services_preferences_mode": new_profile.mode.value,
                "updated_at": event.updated_at.isoformat(),
            }
        )
    elif (
        new_profile.is_inbox_enabled
        and old_profile is not None
        and old_profile.mode != new_profile.mode
    ):
        notifications.append(
            {
                "name": "profile.service-preferences-changed",
                "fiscal_code": new_profile.fiscal_code,
                "services_preferences_mode": new_profile.mode.value,
                "old_services_preferences_mode": old_profile.mode.value,
                "updated_at": event.updated_at.isoformat(),
            }
        )
    return notifications


def decode_event(raw_event: Any) -> ProfileChangeEvent:
    """Validate a raw change event, raising ``InvalidEventError`` when it does not decode."""
    if isinstance(raw_event, ProfileChangeEvent):
        return raw_event
    try:
        return ProfileChangeEvent.model_validate(raw_event)
    except ValidationError as e:
        raise InvalidEventError(
            f"Invalid profile change event: {e.error_count()} validation errors"
        ) from e


class UpsertedProfileSaga:
    """Coordinates the side effects of one ``ProfileChangeEvent``."""

    def __init__(
        self,
        activities: SagaActivities,
        journal: StepJournal,
        *,
        saga_id: str = "",
        config: SagaConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.activities = activities
        self.saga_id = saga_id
        self.config = config or SagaConfig.from_settings()
        self.runner = StepRunner(journal, retry_policy, sleep)

    async def run(self, raw_event: Any) -> SagaResult:
        """Drive the saga to DONE, or FAILED for undecodable input.

        Raises ``ExhaustedRetriesError`` when a REQUIRED step gives up.
        """
        result = SagaResult(saga_id=self.saga_id)
        try:
            event = decode_event(raw_event)
        except InvalidEventError as e:
            logger.error(
                "Cannot decode profile change event: saga_id=%s error=%s",
                self.saga_id,
                e.__cause__,
            )
            result.reason = str(e)
            result.advance(SagaState.FAILED)
            return result

        result.fiscal_code = event.fiscal_code
        result.operation = event.operation
        logger.info(
            "Saga started: saga_id=%s fiscal_code=%s operation=%s version=%s",
            self.saga_id,
            event.fiscal_code,
            event.operation.value,
            event.new_profile.version,
        )

        result.advance(SagaState.EMAIL_CHECK)
        await self._check_email(event, result)

        result.advance(SagaState.WELCOME)
        await self._send_welcome_messages(event, result)

        result.advance(SagaState.FEED_UPDATE)
        new_settings = await self._update_feed(event, result)

        result.advance(SagaState.MIGRATION)
        await self._migrate(event, new_settings, result)

        result.advance(SagaState.NOTIFY)
        await self._notify(event, result)

        result.advance(SagaState.DONE)
        logger.info(
            "Saga completed: saga_id=%s fiscal_code=%s failed_steps=%s",
            self.saga_id,
            event.fiscal_code,
            result.failed_steps,
        )
        return result

    async def _check_email(self, event: ProfileChangeEvent, result: SagaResult) -> None:
        old_profile = event.old_profile
        new_email = event.new_profile.email
        if old_profile is None or new_email is None or new_email == old_profile.email:
            return

        logger.info("Email changed, starting validation: fiscal_code=%s", event.fiscal_code)
        process = EmailValidationProcess(self.activities, self.runner)
        outcome = await self.runner.run_group(
            "email_validation",
            STEP_POLICIES["email_validation"],
            partial(process.run, event.fiscal_code, new_email),
        )
        result.email_validation_started = True
        if not outcome.ok:
            result.failed_steps.append("email_validation")

    async def _send_welcome_messages(self, event: ProfileChangeEvent, result: SagaResult) -> None:
        if not has_just_enabled_inbox(event.new_profile, event.old_profile):
            return

        for kind in welcome_message_kinds(send_cashback=self.config.send_cashback_message):
            step_id = f"welcome.{kind.value}"
            outcome = await self.runner.run(
                step_id,
                STEP_POLICIES["welcome"],
                partial(self.activities.send_welcome_message, event.fiscal_code, kind),
            )
            if outcome.ok:
                result.welcome_messages_sent.append(kind.value)
            else:
                result.failed_steps.append(step_id)

    async def _update_feed(
        self, event: ProfileChangeEvent, result: SagaResult
    ) -> ServicesPreferencesSettings | None:
        old_settings = (
            event.old_profile.services_preferences_settings if event.old_profile else None
        )
        new_settings = transition_preferences(old_settings, event.new_profile.mode)
        if isinstance(new_settings, Conflict):
            logger.error(
                "Inconsistent preferences change, feed left untouched: fiscal_code=%s reason=%s",
                event.fiscal_code,
                new_settings.reason,
            )
            result.reason = new_settings.reason
            return None

        plan = plan_feed_update(event, new_settings)

        previous_preferences: list[ServicePreferenceData] | None = None
        if plan.previous_settings_version is not None:
            outcome = await self.runner.run(
                "feed.read_previous_preferences",
                STEP_POLICIES["feed.read_previous_preferences"],
                partial(
                    self.activities.get_service_preferences,
                    event.fiscal_code,
                    plan.previous_settings_version,
                ),
            )
            previous_preferences = [
                ServicePreferenceData.model_validate(p) for p in outcome.result or []
            ]

        for feed_event in plan.events:
            if (
                previous_preferences is not None
                and feed_event.subscription_kind == SubscriptionKind.PROFILE
            ):
                feed_event = feed_event.model_copy(
                    update={"previous_preferences": previous_preferences}
                )
            label = "-".join(
                part
                for part in (
                    feed_event.subscription_kind.value,
                    feed_event.operation.value,
                    feed_event.service_id,
                )
                if part
            )
            await self.runner.run(
                f"feed.publish.{label}",
                STEP_POLICIES["feed.publish"],
                partial(self.activities.publish_feed_event, feed_event),
            )
            result.feed_events.append(label)

        return new_settings

    async def _migrate(
        self,
        event: ProfileChangeEvent,
        new_settings: ServicesPreferencesSettings | None,
        result: SagaResult,
    ) -> None:
        old_profile = event.old_profile
        if old_profile is None or new_settings is None:
            return
        if not should_migrate(
            old_profile.mode, new_settings.mode, old_profile.blocked_inbox_or_channels
        ):
            return

        preferences = convert_blocked_channels(
            event.fiscal_code, old_profile.blocked_inbox_or_channels, new_settings.version
        )
        if not preferences:
            return

        batch = MigrationBatch(
            fiscal_code=event.fiscal_code,
            settings_version=new_settings.version,
            preferences=preferences,
        )
        await self.runner.run(
            "migration.enqueue",
            STEP_POLICIES["migration.enqueue"],
            partial(
                self.activities.enqueue,
                self.config.migrate_preferences_queue,
                batch.model_dump(mode="json"),
            ),
        )
        result.migrated_preferences = len(preferences)
        logger.info(
            "Migration enqueued: fiscal_code=%s settings_version=%s preferences=%s mode=%s",
            event.fiscal_code,
            new_settings.version,
            len(preferences),
            new_settings.mode.value,
        )

    async def _notify(self, event: ProfileChangeEvent, result: SagaResult) -> None:
        if not self.config.notify_on_queues:
            return

        for notification in build_notifications(event):
            for queue_name in self.config.notify_on_queues:
                step_id = f"notify.{queue_name}.{notification['name']}"
                outcome = await self.runner.run(
                    step_id,
                    STEP_POLICIES["notify"],
                    partial(self.activities.enqueue, queue_name, notification),
                )
                if outcome.ok:
                    result.notifications.append(step_id)
                else:
                    result.failed_steps.append(step_id)
