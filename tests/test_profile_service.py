"""Tests for ProfileService write rules over the in-memory store."""

import pytest

from profile_saga.core.errors import ConflictError, ProfileNotFoundError
from profile_saga.models.profile import ServicesPreferencesMode
from profile_saga.schemas.profile import (
    NewProfilePayload,
    ProfileOperation,
    ProfilePayload,
    RequestedPreferencesSettings,
)
from profile_saga.services.profile_service import ProfileService

from tests.conftest import FISCAL_CODE, InMemoryProfileStore


@pytest.fixture
def service(profile_store: InMemoryProfileStore) -> ProfileService:
    return ProfileService(profile_store)


async def _create(service: ProfileService, **fields: object) -> None:
    await service.create_profile(FISCAL_CODE, NewProfilePayload.model_validate(fields))


class TestCreateProfile:
    async def test_creates_version_zero_in_legacy(self, service: ProfileService) -> None:
        event = await service.create_profile(
            FISCAL_CODE, NewProfilePayload(email="user@example.com", is_inbox_enabled=True)
        )
        profile = event.new_profile
        assert event.operation == ProfileOperation.CREATED
        assert event.old_profile is None
        assert profile.version == 0
        assert profile.mode == ServicesPreferencesMode.LEGACY
        assert profile.services_preferences_settings.version == -1
        assert profile.is_email_validated is False
        assert profile.is_email_enabled is True

    async def test_duplicate_conflicts(self, service: ProfileService) -> None:
        await _create(service)
        with pytest.raises(ConflictError):
            await _create(service)


class TestUpdateProfile:
    async def test_missing_profile(self, service: ProfileService) -> None:
        with pytest.raises(ProfileNotFoundError):
            await service.update_profile(FISCAL_CODE, ProfilePayload(version=0))

    async def test_stale_version_conflicts(self, service: ProfileService) -> None:
        await _create(service)
        await service.update_profile(FISCAL_CODE, ProfilePayload(version=0))
        with pytest.raises(ConflictError):
            await service.update_profile(FISCAL_CODE, ProfilePayload(version=0))

    async def test_event_carries_both_versions(self, service: ProfileService) -> None:
        await _create(service, is_inbox_enabled=False)
        event = await service.update_profile(
            FISCAL_CODE, ProfilePayload(version=0, is_inbox_enabled=True)
        )
        assert event.operation == ProfileOperation.UPDATED
        assert event.old_profile is not None
        assert event.old_profile.version == 0
        assert event.new_profile.version == 1
        assert event.new_profile.is_inbox_enabled

    async def test_unset_fields_are_kept(self, service: ProfileService) -> None:
        await _create(service, email="user@example.com", is_webhook_enabled=True)
        event = await service.update_profile(FISCAL_CODE, ProfilePayload(version=0))
        assert event.new_profile.email == "user@example.com"
        assert event.new_profile.is_webhook_enabled

    async def test_email_change_resets_validation(
        self, service: ProfileService, profile_store: InMemoryProfileStore
    ) -> None:
        await _create(service, email="old@example.com")
        await service.mark_email_validated(FISCAL_CODE, "old@example.com")
        event = await service.update_profile(
            FISCAL_CODE, ProfilePayload(version=1, email="new@example.com")
        )
        assert event.new_profile.email == "new@example.com"
        assert event.new_profile.is_email_validated is False

    async def test_first_tos_acceptance_opts_in(self, service: ProfileService) -> None:
        await _create(service)
        event = await service.update_profile(
            FISCAL_CODE, ProfilePayload(version=0, accepted_tos_version=2)
        )
        assert event.new_profile.accepted_tos_version == 2
        assert event.new_profile.is_inbox_enabled
        assert event.new_profile.is_webhook_enabled

    async def test_legacy_keeps_block_list(self, service: ProfileService) -> None:
        await _create(service)
        event = await service.update_profile(
            FISCAL_CODE,
            ProfilePayload.model_validate(
                {"version": 0, "blocked_inbox_or_channels": {"svc-1": ["INBOX"]}}
            ),
        )
        assert event.new_profile.blocked_inbox_or_channels == {"svc-1": ["INBOX"]}

    async def test_leaving_legacy(self, service: ProfileService) -> None:
        """The new mode gets settings version 0 and the block-list is dropped."""
        await _create(service)
        await service.update_profile(
            FISCAL_CODE,
            ProfilePayload.model_validate(
                {"version": 0, "blocked_inbox_or_channels": {"svc-1": ["INBOX"]}}
            ),
        )
        event = await service.update_profile(
            FISCAL_CODE,
            ProfilePayload(
                version=1,
                services_preferences_settings=RequestedPreferencesSettings(
                    mode=ServicesPreferencesMode.AUTO
                ),
            ),
        )
        assert event.new_profile.mode == ServicesPreferencesMode.AUTO
        assert event.new_profile.services_preferences_settings.version == 0
        assert event.new_profile.blocked_inbox_or_channels is None
        assert event.old_profile is not None
        assert event.old_profile.blocked_inbox_or_channels == {"svc-1": ["INBOX"]}

    async def test_opted_in_update_requires_settings(self, service: ProfileService) -> None:
        await _create(service)
        await service.update_profile(
            FISCAL_CODE,
            ProfilePayload(
                version=0,
                services_preferences_settings=RequestedPreferencesSettings(
                    mode=ServicesPreferencesMode.MANUAL
                ),
            ),
        )
        with pytest.raises(ConflictError):
            await service.update_profile(FISCAL_CODE, ProfilePayload(version=1))

    async def test_back_to_legacy_conflicts(
        self, service: ProfileService, profile_store: InMemoryProfileStore
    ) -> None:
        await _create(service)
        await service.update_profile(
            FISCAL_CODE,
            ProfilePayload(
                version=0,
                services_preferences_settings=RequestedPreferencesSettings(
                    mode=ServicesPreferencesMode.AUTO
                ),
            ),
        )
        with pytest.raises(ConflictError):
            await service.update_profile(
                FISCAL_CODE,
                ProfilePayload(
                    version=1,
                    services_preferences_settings=RequestedPreferencesSettings(
                        mode=ServicesPreferencesMode.LEGACY
                    ),
                ),
            )
        assert len(profile_store.profiles[FISCAL_CODE]) == 2


class TestMarkEmailValidated:
    async def test_marks_current_email(self, service: ProfileService) -> None:
        await _create(service, email="user@example.com")
        profile = await service.mark_email_validated(FISCAL_CODE, "user@example.com")
        assert profile.is_email_validated
        assert profile.version == 1

    async def test_already_validated_is_a_no_op(
        self, service: ProfileService, profile_store: InMemoryProfileStore
    ) -> None:
        await _create(service, email="user@example.com")
        await service.mark_email_validated(FISCAL_CODE, "user@example.com")
        profile = await service.mark_email_validated(FISCAL_CODE, "user@example.com")
        assert profile.version == 1
        assert len(profile_store.profiles[FISCAL_CODE]) == 2

    async def test_changed_email_conflicts(self, service: ProfileService) -> None:
        await _create(service, email="new@example.com")
        with pytest.raises(ConflictError):
            await service.mark_email_validated(FISCAL_CODE, "old@example.com")

    async def test_without_email_validates_current_address(self, service: ProfileService) -> None:
        await _create(service, email="user@example.com")
        profile = await service.mark_email_validated(FISCAL_CODE)
        assert profile.is_email_validated
        assert profile.email == "user@example.com"

    async def test_profile_without_email_conflicts(self, service: ProfileService) -> None:
        await _create(service)
        with pytest.raises(ConflictError, match="no email"):
            await service.mark_email_validated(FISCAL_CODE)
