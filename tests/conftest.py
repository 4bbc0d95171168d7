"""Pytest configuration and fixtures for the profile saga test suite.

Provides:
- In-memory profile store (no database needed)
- Scripted saga activities recording every side effect
- Mock Redis (fakeredis)
- Disabled rate limiting
- HTTP clients with store / token issuer overrides and mocked Celery tasks
- Profile and change-event factories
"""

from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from profile_saga.core.deps import get_profile_store, get_token_issuer
from profile_saga.core.errors import ConflictError
from profile_saga.core.rate_limit import limiter
from profile_saga.main import app
from profile_saga.models.profile import ServicesPreferencesMode
from profile_saga.schemas.preferences import ServicePreferenceData
from profile_saga.schemas.profile import RetrievedProfile, ServicesPreferencesSettings
from profile_saga.schemas.subscription import SubscriptionEvent
from profile_saga.services.message_service import WelcomeMessageKind
from profile_saga.workers.journal import InMemoryStepJournal
from profile_saga.workers.saga import RetryPolicy, SagaConfig, UpsertedProfileSaga

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
FISCAL_CODE = "AAAAAA00A00A000A"
OTHER_FISCAL_CODE = "BBBBBB00B00B000B"
UPDATED_AT = datetime(2026, 10, 19, 10, 30, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


# ---------------------------------------------------------------------------
# In-memory profile store
# ---------------------------------------------------------------------------


class InMemoryProfileStore:
    """``ProfileStore`` keeping version chains and preference documents in dicts."""

    def __init__(self) -> None:
        self.profiles: dict[str, list[RetrievedProfile]] = {}
        self.preferences: dict[str, ServicePreferenceData] = {}
        self.preference_write_error: Exception | None = None

    async def find_last_version(self, fiscal_code: str) -> RetrievedProfile | None:
        versions = self.profiles.get(fiscal_code)
        return versions[-1] if versions else None

    async def create(self, profile: RetrievedProfile) -> RetrievedProfile:
        if profile.fiscal_code in self.profiles:
            raise ConflictError(f"A profile with fiscal code {profile.fiscal_code} already exists")
        self.profiles[profile.fiscal_code] = [profile]
        return profile

    async def write(self, profile: RetrievedProfile, expected_version: int) -> RetrievedProfile:
        current = await self.find_last_version(profile.fiscal_code)
        if current is None or current.version != expected_version:
            raise ConflictError(f"Profile is not at version {expected_version}")
        stored = profile.model_copy(update={"version": expected_version + 1})
        self.profiles[profile.fiscal_code].append(stored)
        return stored

    async def create_service_preference(self, preference: ServicePreferenceData) -> bool:
        if self.preference_write_error is not None:
            raise self.preference_write_error
        if preference.document_id in self.preferences:
            return False
        self.preferences[preference.document_id] = preference
        return True

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[ServicePreferenceData]:
        return sorted(
            (
                p
                for p in self.preferences.values()
                if p.fiscal_code == fiscal_code and p.settings_version == settings_version
            ),
            key=lambda p: p.service_id,
        )


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    """Provide a fresh in-memory profile store per test."""
    return InMemoryProfileStore()


# ---------------------------------------------------------------------------
# Scripted saga activities
# ---------------------------------------------------------------------------


class FakeSagaActivities:
    """``SagaActivities`` that record side effects and fail on demand.

    ``fail(key, *errors)`` queues errors raised by the next calls of ``key``;
    ``fail_always(key, error)`` makes every call raise. Keys are method names,
    except welcome messages which use ``send_welcome_message.<KIND>``.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.tokens: list[dict[str, Any]] = []
        self.validation_emails: list[tuple[str, str]] = []
        self.verification_emails: list[tuple[str, str]] = []
        self.welcome_messages: list[str] = []
        self.feed_events: list[SubscriptionEvent] = []
        self.enqueued: list[tuple[str, dict[str, Any]]] = []
        self.stored_preferences: dict[tuple[str, int], list[dict[str, Any]]] = {}
        self._queued_errors: dict[str, list[Exception]] = {}
        self._permanent_errors: dict[str, Exception] = {}

    def fail(self, key: str, *errors: Exception) -> None:
        self._queued_errors.setdefault(key, []).extend(errors)

    def fail_always(self, key: str, error: Exception) -> None:
        self._permanent_errors[key] = error

    def heal(self, key: str) -> None:
        self._permanent_errors.pop(key, None)
        self._queued_errors.pop(key, None)

    def _attempt(self, key: str) -> None:
        self.calls.append(key)
        if key in self._permanent_errors:
            raise self._permanent_errors[key]
        queued = self._queued_errors.get(key)
        if queued:
            raise queued.pop(0)

    async def create_validation_token(self, fiscal_code: str, email: str) -> dict[str, Any]:
        self._attempt("create_validation_token")
        issued = {
            "token_id": f"01J{len(self.tokens):023d}",
            "validator": f"{len(self.tokens):024x}",
            "invalid_after": "2026-11-18T10:30:00+00:00",
        }
        self.tokens.append(issued)
        return issued

    async def send_validation_email(self, email: str, token: str) -> str | None:
        self._attempt("send_validation_email")
        self.validation_emails.append((email, token))
        return f"email-{len(self.validation_emails)}"

    async def create_verification_token(self, fiscal_code: str) -> dict[str, Any]:
        self._attempt("create_verification_token")
        issued = {
            "token_id": f"01K{len(self.tokens):023d}",
            "validator": f"{len(self.tokens):024x}",
            "invalid_after": "2026-11-18T10:30:00+00:00",
        }
        self.tokens.append(issued)
        return issued

    async def send_verification_email(self, email: str, token: str) -> str | None:
        self._attempt("send_verification_email")
        self.verification_emails.append((email, token))
        return f"verification-{len(self.verification_emails)}"

    async def send_welcome_message(self, fiscal_code: str, kind: WelcomeMessageKind) -> str | None:
        self._attempt(f"send_welcome_message.{kind.value}")
        self.welcome_messages.append(kind.value)
        return f"message-{kind.value.lower()}"

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[dict[str, Any]]:
        self._attempt("get_service_preferences")
        return self.stored_preferences.get((fiscal_code, settings_version), [])

    async def publish_feed_event(self, event: SubscriptionEvent) -> bool:
        self._attempt("publish_feed_event")
        self.feed_events.append(event)
        return True

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None:
        self._attempt("enqueue")
        self.enqueued.append((queue_name, payload))


@pytest.fixture
def activities() -> FakeSagaActivities:
    return FakeSagaActivities()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the step runner, in order."""
    return []


@pytest.fixture
def no_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    """Sleep replacement that records the delay and returns immediately."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def saga_factory(
    activities: FakeSagaActivities,
    no_sleep: Callable[[float], Any],
) -> Callable[..., UpsertedProfileSaga]:
    """Build sagas over the fake activities with the default retry policy and no real sleeps."""

    def _create(
        *,
        journal: InMemoryStepJournal | None = None,
        send_cashback_message: bool = False,
        notify_on_queues: tuple[str, ...] = (),
    ) -> UpsertedProfileSaga:
        return UpsertedProfileSaga(
            activities,
            journal or InMemoryStepJournal(),
            saga_id="saga-test",
            config=SagaConfig(
                send_cashback_message=send_cashback_message,
                migrate_preferences_queue="migrate-services-preferences",
                notify_on_queues=notify_on_queues,
            ),
            retry_policy=RetryPolicy(initial_delay=5.0, backoff_coefficient=1.5, max_attempts=10),
            sleep=no_sleep,
        )

    return _create


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Provide a fresh fakeredis instance per test."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_profile() -> Callable[..., RetrievedProfile]:
    """Factory for profile snapshots; defaults to an inbox-enabled LEGACY profile."""

    def _create(
        *,
        fiscal_code: str = FISCAL_CODE,
        version: int = 0,
        email: str | None = "user@example.com",
        is_email_validated: bool = True,
        is_inbox_enabled: bool = True,
        is_webhook_enabled: bool = False,
        is_email_enabled: bool = True,
        accepted_tos_version: int | None = 1,
        mode: ServicesPreferencesMode = ServicesPreferencesMode.LEGACY,
        settings_version: int = -1,
        blocked: dict[str, list[str]] | None = None,
    ) -> RetrievedProfile:
        return RetrievedProfile.model_validate(
            {
                "fiscal_code": fiscal_code,
                "version": version,
                "email": email,
                "is_email_validated": is_email_validated,
                "is_inbox_enabled": is_inbox_enabled,
                "is_webhook_enabled": is_webhook_enabled,
                "is_email_enabled": is_email_enabled,
                "accepted_tos_version": accepted_tos_version,
                "services_preferences_settings": ServicesPreferencesSettings(
                    mode=mode, version=settings_version
                ),
                "blocked_inbox_or_channels": blocked,
            }
        )

    return _create


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Factory for serialized change events, as the saga task receives them."""

    def _create(
        new_profile: RetrievedProfile,
        old_profile: RetrievedProfile | None = None,
        updated_at: datetime = UPDATED_AT,
    ) -> dict[str, Any]:
        return {
            "new_profile": new_profile.model_dump(mode="json"),
            "old_profile": old_profile.model_dump(mode="json") if old_profile else None,
            "updated_at": updated_at.isoformat(),
        }

    return _create


# ---------------------------------------------------------------------------
# Celery task mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_celery_profile_tasks() -> Generator[dict[str, MagicMock], None, None]:
    """Patch the profile Celery tasks so routes never reach a broker."""
    with (
        patch("profile_saga.workers.tasks.profiles.run_upserted_profile_saga") as mock_saga,
        patch(
            "profile_saga.workers.tasks.profiles.run_email_validation_process"
        ) as mock_email_validation,
        patch(
            "profile_saga.workers.tasks.profiles.run_email_verification_process"
        ) as mock_email_verification,
    ):
        mock_saga.delay.return_value = MagicMock(id="saga-task-id")
        mock_email_validation.delay.return_value = MagicMock(id="email-task-id")
        mock_email_verification.delay.return_value = MagicMock(id="verification-task-id")
        yield {
            "run_upserted_profile_saga": mock_saga,
            "run_email_validation_process": mock_email_validation,
            "run_email_verification_process": mock_email_verification,
        }


# ---------------------------------------------------------------------------
# HTTP clients
# ---------------------------------------------------------------------------


@pytest.fixture
def token_issuer() -> MagicMock:
    """Token issuer double; tests set the ``confirm_*_token`` behaviour."""
    issuer = MagicMock()
    issuer.confirm_validation_token = AsyncMock()
    issuer.confirm_verification_token = AsyncMock()
    return issuer


@pytest_asyncio.fixture
async def client(
    profile_store: InMemoryProfileStore,
    token_issuer: MagicMock,
    mock_celery_profile_tasks: dict[str, MagicMock],  # noqa: ARG001
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client backed by the in-memory store, with Celery tasks mocked."""
    app.dependency_overrides[get_profile_store] = lambda: profile_store
    app.dependency_overrides[get_token_issuer] = lambda: token_issuer

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
