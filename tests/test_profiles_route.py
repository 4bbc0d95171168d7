"""Tests for the profile and email-validation HTTP endpoints.

Covers:
- Create / read / update with version and preferences-mode conflicts
- Saga dispatch after every successful write (and only then)
- Email validation and verification restart endpoints
- Validation and verification link confirmation
- Broker outage after a stored write
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from httpx import AsyncClient
from kombu.exceptions import OperationalError

from profile_saga.core.errors import InvalidTokenError, TransientStoreError

from tests.conftest import FISCAL_CODE, InMemoryProfileStore

PROFILES_URL = f"/api/v1/profiles/{FISCAL_CODE}"


async def _create(client: AsyncClient, **body: object) -> dict:  # type: ignore[type-arg]
    response = await client.post(PROFILES_URL, json=body)
    assert response.status_code == 201
    return response.json()  # type: ignore[no-any-return]


class TestCreateProfile:
    """Tests for POST /api/v1/profiles/{fiscal_code}."""

    async def test_create_returns_version_zero(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        data = await _create(client, email="user@example.com", is_inbox_enabled=True)

        assert data["fiscal_code"] == FISCAL_CODE
        assert data["version"] == 0
        assert data["services_preferences_settings"] == {"mode": "LEGACY", "version": -1}

        saga = mock_celery_profile_tasks["run_upserted_profile_saga"]
        saga.delay.assert_called_once()
        event = saga.delay.call_args[0][0]
        assert event["old_profile"] is None
        assert event["new_profile"]["fiscal_code"] == FISCAL_CODE
        assert "updated_at" in event

    async def test_duplicate_is_409(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client)
        response = await client.post(PROFILES_URL, json={})
        assert response.status_code == 409
        assert mock_celery_profile_tasks["run_upserted_profile_saga"].delay.call_count == 1

    async def test_invalid_fiscal_code_is_422(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/profiles/not-a-fiscal-code", json={})
        assert response.status_code == 422


class TestGetProfile:
    async def test_missing_is_404(self, client: AsyncClient) -> None:
        response = await client.get(PROFILES_URL)
        assert response.status_code == 404
        assert response.json()["detail"]

    async def test_store_outage_is_503(
        self, client: AsyncClient, profile_store: InMemoryProfileStore
    ) -> None:
        with patch.object(
            profile_store, "find_last_version", side_effect=TransientStoreError("db down")
        ):
            response = await client.get(PROFILES_URL)
        assert response.status_code == 503
        assert response.json() == {"detail": "db down"}

    async def test_returns_latest_version(self, client: AsyncClient) -> None:
        await _create(client, is_inbox_enabled=False)
        await client.put(PROFILES_URL, json={"version": 0, "is_inbox_enabled": True})

        response = await client.get(PROFILES_URL)
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 1
        assert data["is_inbox_enabled"] is True


class TestUpdateProfile:
    """Tests for PUT /api/v1/profiles/{fiscal_code}."""

    async def test_update_dispatches_saga_with_both_versions(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client, email="old@example.com")
        response = await client.put(
            PROFILES_URL, json={"version": 0, "email": "new@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["is_email_validated"] is False

        event = mock_celery_profile_tasks["run_upserted_profile_saga"].delay.call_args[0][0]
        assert event["old_profile"]["email"] == "old@example.com"
        assert event["new_profile"]["email"] == "new@example.com"
        assert event["new_profile"]["version"] == 1

    async def test_stale_version_is_409_without_saga(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client)
        response = await client.put(PROFILES_URL, json={"version": 3})
        assert response.status_code == 409
        assert mock_celery_profile_tasks["run_upserted_profile_saga"].delay.call_count == 1

    async def test_missing_profile_is_404(self, client: AsyncClient) -> None:
        response = await client.put(PROFILES_URL, json={"version": 0})
        assert response.status_code == 404

    async def test_missing_version_is_422(self, client: AsyncClient) -> None:
        await _create(client)
        response = await client.put(PROFILES_URL, json={"email": "x@example.com"})
        assert response.status_code == 422

    async def test_mode_change(
        self, client: AsyncClient, profile_store: InMemoryProfileStore
    ) -> None:
        await _create(client)
        await client.put(
            PROFILES_URL,
            json={"version": 0, "blocked_inbox_or_channels": {"svc-1": ["INBOX"]}},
        )
        response = await client.put(
            PROFILES_URL,
            json={"version": 1, "services_preferences_settings": {"mode": "AUTO"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["services_preferences_settings"] == {"mode": "AUTO", "version": 0}
        assert data["blocked_inbox_or_channels"] is None
        assert len(profile_store.profiles[FISCAL_CODE]) == 3

    async def test_back_to_legacy_is_409(self, client: AsyncClient) -> None:
        await _create(client)
        await client.put(
            PROFILES_URL,
            json={"version": 0, "services_preferences_settings": {"mode": "MANUAL"}},
        )
        response = await client.put(
            PROFILES_URL,
            json={"version": 1, "services_preferences_settings": {"mode": "LEGACY"}},
        )
        assert response.status_code == 409

    async def test_unknown_mode_is_422(self, client: AsyncClient) -> None:
        await _create(client)
        response = await client.put(
            PROFILES_URL,
            json={"version": 0, "services_preferences_settings": {"mode": "SOMETIMES"}},
        )
        assert response.status_code == 422


class TestEmailValidationProcess:
    """Tests for POST /api/v1/profiles/{fiscal_code}/email-validation-process."""

    async def test_accepted(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client, email="user@example.com")
        response = await client.post(f"{PROFILES_URL}/email-validation-process")
        assert response.status_code == 202
        mock_celery_profile_tasks["run_email_validation_process"].delay.assert_called_once_with(
            FISCAL_CODE, "user@example.com"
        )

    async def test_no_email_is_400(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client)
        response = await client.post(f"{PROFILES_URL}/email-validation-process")
        assert response.status_code == 400
        mock_celery_profile_tasks["run_email_validation_process"].delay.assert_not_called()

    async def test_already_validated_is_400(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        await _create(client, email="user@example.com")
        token_issuer.confirm_validation_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE, email="user@example.com"
        )
        await client.get("/api/v1/email-validation/confirm", params={"token": "id:validator"})

        response = await client.post(f"{PROFILES_URL}/email-validation-process")
        assert response.status_code == 400

    async def test_missing_profile_is_404(self, client: AsyncClient) -> None:
        response = await client.post(f"{PROFILES_URL}/email-validation-process")
        assert response.status_code == 404


class TestConfirmEmail:
    """Tests for GET /api/v1/email-validation/confirm."""

    async def test_valid_token_validates_email(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        await _create(client, email="user@example.com")
        token_issuer.confirm_validation_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE, email="user@example.com"
        )

        response = await client.get(
            "/api/v1/email-validation/confirm", params={"token": "id:validator"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "fiscal_code": FISCAL_CODE,
            "email": "user@example.com",
            "version": 1,
        }
        token_issuer.confirm_validation_token.assert_awaited_once_with("id:validator")
        profile = (await client.get(PROFILES_URL)).json()
        assert profile["is_email_validated"] is True

    async def test_invalid_token_is_400(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        token_issuer.confirm_validation_token.side_effect = InvalidTokenError("Invalid token")
        response = await client.get(
            "/api/v1/email-validation/confirm", params={"token": "id:validator"}
        )
        assert response.status_code == 400

    async def test_changed_email_is_409(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        await _create(client, email="new@example.com")
        token_issuer.confirm_validation_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE, email="old@example.com"
        )
        response = await client.get(
            "/api/v1/email-validation/confirm", params={"token": "id:validator"}
        )
        assert response.status_code == 409

    async def test_missing_token_is_422(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/email-validation/confirm")
        assert response.status_code == 422


class TestEmailVerificationProcess:
    """Tests for POST /api/v1/profiles/{fiscal_code}/email-verification-process."""

    async def test_accepted(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client, email="user@example.com")
        response = await client.post(f"{PROFILES_URL}/email-verification-process")
        assert response.status_code == 202
        mock_celery_profile_tasks[
            "run_email_verification_process"
        ].delay.assert_called_once_with(FISCAL_CODE, "user@example.com")
        mock_celery_profile_tasks["run_email_validation_process"].delay.assert_not_called()

    async def test_missing_profile_is_404(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        response = await client.post(f"{PROFILES_URL}/email-verification-process")
        assert response.status_code == 404
        mock_celery_profile_tasks["run_email_verification_process"].delay.assert_not_called()

    async def test_already_validated_is_400(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client, email="user@example.com")
        token_issuer.confirm_verification_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE
        )
        await client.get("/api/v1/email-verification/confirm", params={"token": "id:validator"})

        response = await client.post(f"{PROFILES_URL}/email-verification-process")
        assert response.status_code == 400
        mock_celery_profile_tasks["run_email_verification_process"].delay.assert_not_called()


class TestConfirmEmailVerification:
    """Tests for GET /api/v1/email-verification/confirm."""

    async def test_valid_token_validates_current_email(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        await _create(client, email="user@example.com")
        token_issuer.confirm_verification_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE
        )

        response = await client.get(
            "/api/v1/email-verification/confirm", params={"token": "id:validator"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "fiscal_code": FISCAL_CODE,
            "email": "user@example.com",
            "version": 1,
        }
        token_issuer.confirm_verification_token.assert_awaited_once_with("id:validator")
        token_issuer.confirm_validation_token.assert_not_awaited()
        profile = (await client.get(PROFILES_URL)).json()
        assert profile["is_email_validated"] is True

    async def test_invalid_token_is_400(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        token_issuer.confirm_verification_token.side_effect = InvalidTokenError("Invalid token")
        response = await client.get(
            "/api/v1/email-verification/confirm", params={"token": "id:validator"}
        )
        assert response.status_code == 400

    async def test_profile_without_email_is_409(
        self,
        client: AsyncClient,
        token_issuer: MagicMock,
    ) -> None:
        await _create(client)
        token_issuer.confirm_verification_token.return_value = SimpleNamespace(
            fiscal_code=FISCAL_CODE
        )
        response = await client.get(
            "/api/v1/email-verification/confirm", params={"token": "id:validator"}
        )
        assert response.status_code == 409


class TestBrokerUnavailable:
    """A broker outage after the write answers 503 and keeps the stored profile."""

    async def test_create_with_broker_down_is_503(
        self,
        client: AsyncClient,
        profile_store: InMemoryProfileStore,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        saga = mock_celery_profile_tasks["run_upserted_profile_saga"]
        saga.delay.side_effect = OperationalError("Connection refused")

        response = await client.post(PROFILES_URL, json={"email": "user@example.com"})

        assert response.status_code == 503
        assert "Cannot schedule" in response.json()["detail"]
        saga.delay.assert_called_once()
        stored = await profile_store.find_last_version(FISCAL_CODE)
        assert stored is not None
        assert stored.version == 0

    async def test_update_with_broker_down_is_503(
        self,
        client: AsyncClient,
        profile_store: InMemoryProfileStore,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client)
        mock_celery_profile_tasks["run_upserted_profile_saga"].delay.side_effect = (
            OperationalError("Connection refused")
        )

        response = await client.put(PROFILES_URL, json={"version": 0, "is_inbox_enabled": True})

        assert response.status_code == 503
        stored = await profile_store.find_last_version(FISCAL_CODE)
        assert stored is not None
        assert stored.version == 1

    async def test_email_process_with_broker_down_is_503(
        self,
        client: AsyncClient,
        mock_celery_profile_tasks: dict[str, MagicMock],
    ) -> None:
        await _create(client, email="user@example.com")
        mock_celery_profile_tasks["run_email_verification_process"].delay.side_effect = (
            OperationalError("Connection refused")
        )
        response = await client.post(f"{PROFILES_URL}/email-verification-process")
        assert response.status_code == 503
