"""Profile write path: create and update, producing the saga's change events."""

import logging
from datetime import UTC, datetime
from typing import TypeVar

from profile_saga.core.errors import ConflictError, ProfileNotFoundError
from profile_saga.models.profile import ServicesPreferencesMode
from profile_saga.schemas.profile import (
    NewProfilePayload,
    ProfileChangeEvent,
    ProfilePayload,
    RetrievedProfile,
    ServicesPreferencesSettings,
)
from profile_saga.services.preferences import Conflict, check_version, transition_preferences
from profile_saga.services.profile_store import ProfileStore

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ProfileService:
    """Reads and writes profiles through a ``ProfileStore``."""

    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def get_profile(self, fiscal_code: str) -> RetrievedProfile:
        profile = await self.store.find_last_version(fiscal_code)
        if profile is None:
            raise ProfileNotFoundError(fiscal_code)
        return profile

    async def create_profile(
        self, fiscal_code: str, payload: NewProfilePayload
    ) -> ProfileChangeEvent:
        """Create version 0 of a profile in LEGACY mode."""
        profile = RetrievedProfile(
            fiscal_code=fiscal_code,
            version=0,
            email=payload.email,
            is_email_validated=False,
            is_inbox_enabled=payload.is_inbox_enabled,
            is_webhook_enabled=payload.is_webhook_enabled,
            is_email_enabled=True,
            accepted_tos_version=payload.accepted_tos_version,
            services_preferences_settings=ServicesPreferencesSettings(),
        )
        created = await self.store.create(profile)
        logger.info("Profile created: fiscal_code=%s", fiscal_code)
        return ProfileChangeEvent(new_profile=created, updated_at=datetime.now(UTC))

    async def update_profile(self, fiscal_code: str, payload: ProfilePayload) -> ProfileChangeEvent:
        """Write a new profile version.

        Raises ``ProfileNotFoundError`` when there is nothing to update and
        ``ConflictError`` on a stale version or a forbidden mode change.
        """
        current = await self.get_profile(fiscal_code)

        conflict = check_version(payload.version, current)
        if conflict is not None:
            raise ConflictError(conflict.reason)

        requested_mode = (
            payload.services_preferences_settings.mode
            if payload.services_preferences_settings is not None
            else None
        )
        settings_or_conflict = transition_preferences(
            current.services_preferences_settings, requested_mode
        )
        if isinstance(settings_or_conflict, Conflict):
            raise ConflictError(settings_or_conflict.reason)
        new_settings = settings_or_conflict

        email = payload.email if payload.email is not None else current.email
        is_email_validated = current.is_email_validated and email == current.email

        is_inbox_enabled = _coalesce(payload.is_inbox_enabled, current.is_inbox_enabled)
        is_webhook_enabled = _coalesce(payload.is_webhook_enabled, current.is_webhook_enabled)
        accepted_tos_version = _coalesce(
            payload.accepted_tos_version, current.accepted_tos_version
        )
        # Accepting the terms of service for the first time opts the user in.
        if current.accepted_tos_version is None and accepted_tos_version is not None:
            is_inbox_enabled = True
            is_webhook_enabled = True

        if new_settings.mode == ServicesPreferencesMode.LEGACY:
            blocked = _coalesce(
                payload.blocked_inbox_or_channels, current.blocked_inbox_or_channels
            )
        else:
            blocked = None

        new_profile = RetrievedProfile(
            fiscal_code=fiscal_code,
            version=current.version + 1,
            email=email,
            is_email_validated=is_email_validated,
            is_inbox_enabled=is_inbox_enabled,
            is_webhook_enabled=is_webhook_enabled,
            is_email_enabled=_coalesce(payload.is_email_enabled, current.is_email_enabled),
            accepted_tos_version=accepted_tos_version,
            services_preferences_settings=new_settings,
            blocked_inbox_or_channels=blocked,
        )
        stored = await self.store.write(new_profile, expected_version=current.version)
        logger.info(
            "Profile updated: fiscal_code=%s version=%s mode=%s",
            fiscal_code,
            stored.version,
            new_settings.mode.value,
        )
        return ProfileChangeEvent(
            new_profile=stored, old_profile=current, updated_at=datetime.now(UTC)
        )

    async def mark_email_validated(
        self, fiscal_code: str, email: str | None = None
    ) -> RetrievedProfile:
        """Flag the profile email as validated.

        A validation token names the address it was issued for, which must
        still be the profile's. A verification token names none and validates
        the current address.
        """
        current = await self.get_profile(fiscal_code)
        if current.email is None:
            raise ConflictError("The profile has no email")
        if email is not None and current.email != email:
            raise ConflictError("The validated email is no longer the profile email")
        if current.is_email_validated:
            return current
        validated = current.model_copy(
            update={"version": current.version + 1, "is_email_validated": True}
        )
        stored = await self.store.write(validated, expected_version=current.version)
        logger.info("Email validated: fiscal_code=%s version=%s", fiscal_code, stored.version)
        return stored


def _coalesce(value: T | None, fallback: T) -> T:
    return fallback if value is None else value
