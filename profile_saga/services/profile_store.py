"""Versioned profile and service-preference persistence."""

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from profile_saga.core.errors import ConflictError, TransientStoreError
from profile_saga.models.profile import Profile
from profile_saga.models.service_preference import ServicePreference
from profile_saga.schemas.preferences import ServicePreferenceData
from profile_saga.schemas.profile import RetrievedProfile, ServicesPreferencesSettings

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    """Document-store operations the profile write path and the saga rely on."""

    async def find_last_version(self, fiscal_code: str) -> RetrievedProfile | None: ...

    async def create(self, profile: RetrievedProfile) -> RetrievedProfile:
        """Insert the first version. Raises ``ConflictError`` if one exists."""
        ...

    async def write(self, profile: RetrievedProfile, expected_version: int) -> RetrievedProfile:
        """Insert ``profile`` as the successor of ``expected_version``.

        Raises ``ConflictError`` when another writer got there first.
        """
        ...

    async def create_service_preference(self, preference: ServicePreferenceData) -> bool:
        """Create a preference document. Returns False if it already existed."""
        ...

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[ServicePreferenceData]: ...


def profile_from_row(row: Profile) -> RetrievedProfile:
    return RetrievedProfile(
        fiscal_code=row.fiscal_code,
        version=row.version,
        email=row.email,
        is_email_validated=row.is_email_validated,
        is_inbox_enabled=row.is_inbox_enabled,
        is_webhook_enabled=row.is_webhook_enabled,
        is_email_enabled=row.is_email_enabled,
        accepted_tos_version=row.accepted_tos_version,
        services_preferences_settings=ServicesPreferencesSettings(
            mode=row.services_preferences_mode,
            version=row.services_preferences_version,
        ),
        blocked_inbox_or_channels=row.blocked_inbox_or_channels,
    )


def _row_from_profile(profile: RetrievedProfile) -> Profile:
    blocked = profile.blocked_inbox_or_channels
    return Profile(
        fiscal_code=profile.fiscal_code,
        version=profile.version,
        email=profile.email,
        is_email_validated=profile.is_email_validated,
        is_inbox_enabled=profile.is_inbox_enabled,
        is_webhook_enabled=profile.is_webhook_enabled,
        is_email_enabled=profile.is_email_enabled,
        accepted_tos_version=profile.accepted_tos_version,
        services_preferences_mode=profile.services_preferences_settings.mode,
        services_preferences_version=profile.services_preferences_settings.version,
        blocked_inbox_or_channels=(
            {service_id: [c.value for c in channels] for service_id, channels in blocked.items()}
            if blocked is not None
            else None
        ),
    )


class SqlProfileStore:
    """``ProfileStore`` backed by the ``profiles`` and ``service_preferences`` tables."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_last_version(self, fiscal_code: str) -> RetrievedProfile | None:
        query = (
            select(Profile)
            .where(Profile.fiscal_code == fiscal_code)
            .order_by(Profile.version.desc())
            .limit(1)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Cannot read profile {fiscal_code}: {e}") from e
        row = result.scalar_one_or_none()
        return profile_from_row(row) if row else None

    async def create(self, profile: RetrievedProfile) -> RetrievedProfile:
        if await self.find_last_version(profile.fiscal_code) is not None:
            raise ConflictError(f"A profile with fiscal code {profile.fiscal_code} already exists")
        return await self._insert(profile)

    async def write(self, profile: RetrievedProfile, expected_version: int) -> RetrievedProfile:
        current = await self.find_last_version(profile.fiscal_code)
        if current is None or current.version != expected_version:
            raise ConflictError(
                f"Profile {profile.fiscal_code} is not at version {expected_version}"
            )
        return await self._insert(profile.model_copy(update={"version": expected_version + 1}))

    async def _insert(self, profile: RetrievedProfile) -> RetrievedProfile:
        row = _row_from_profile(profile)
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError(
                f"Concurrent write on profile {profile.fiscal_code} v{profile.version}"
            ) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise TransientStoreError(f"Cannot write profile {profile.fiscal_code}: {e}") from e
        logger.info("Profile stored: fiscal_code=%s version=%s", profile.fiscal_code, profile.version)
        return profile

    async def create_service_preference(self, preference: ServicePreferenceData) -> bool:
        self.db.add(
            ServicePreference(
                document_id=preference.document_id,
                fiscal_code=preference.fiscal_code,
                service_id=preference.service_id,
                settings_version=preference.settings_version,
                is_inbox_enabled=preference.is_inbox_enabled,
                is_email_enabled=preference.is_email_enabled,
                is_webhook_enabled=preference.is_webhook_enabled,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.debug("Service preference already exists: id=%s", preference.document_id)
            return False
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise TransientStoreError(
                f"Cannot create service preference {preference.document_id}: {e}"
            ) from e
        return True

    async def get_service_preferences(
        self, fiscal_code: str, settings_version: int
    ) -> list[ServicePreferenceData]:
        query = (
            select(ServicePreference)
            .where(
                ServicePreference.fiscal_code == fiscal_code,
                ServicePreference.settings_version == settings_version,
            )
            .order_by(ServicePreference.service_id)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Cannot read preferences of {fiscal_code}: {e}") from e
        return [ServicePreferenceData.model_validate(row) for row in result.scalars().all()]
