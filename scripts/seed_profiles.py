"""Seed script for manual saga testing.

Creates one profile per preferences mode:
- LEGACY, inbox enabled, with a block-list (PUT mode=AUTO/MANUAL to trigger migration)
- AUTO at settings version 0
- MANUAL at settings version 1, with preference documents at versions 0 and 1
  (PUT mode=AUTO to see the previous-preferences read)
- LEGACY without inbox and with an unvalidated email
  (PUT is_inbox_enabled=true for welcome messages, or
  POST .../email-validation-process for a validation email)

Usage:
    uv run python -m scripts.seed_profiles
"""

import asyncio

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from profile_saga.core.database import async_session_maker
from profile_saga.models.profile import ServicesPreferencesMode
from profile_saga.schemas.preferences import ServicePreferenceData
from profile_saga.schemas.profile import RetrievedProfile, ServicesPreferencesSettings
from profile_saga.services.profile_store import SqlProfileStore

LEGACY_FC = "LGCLGC80A01H501A"
AUTO_FC = "AUTAUT80A01H501B"
MANUAL_FC = "MNLMNL80A01H501C"
NEW_FC = "NEWNEW80A01H501D"

SEED_FISCAL_CODES = (LEGACY_FC, AUTO_FC, MANUAL_FC, NEW_FC)


def _profile(
    fiscal_code: str,
    email: str,
    *,
    mode: ServicesPreferencesMode = ServicesPreferencesMode.LEGACY,
    settings_version: int = -1,
    is_inbox_enabled: bool = True,
    is_email_validated: bool = True,
    blocked: dict[str, list[str]] | None = None,
) -> RetrievedProfile:
    return RetrievedProfile.model_validate(
        {
            "fiscal_code": fiscal_code,
            "version": 0,
            "email": email,
            "is_email_validated": is_email_validated,
            "is_inbox_enabled": is_inbox_enabled,
            "is_webhook_enabled": is_inbox_enabled,
            "accepted_tos_version": 1 if is_inbox_enabled else None,
            "services_preferences_settings": ServicesPreferencesSettings(
                mode=mode, version=settings_version
            ),
            "blocked_inbox_or_channels": blocked,
        }
    )


async def seed(session: AsyncSession) -> None:
    # Clean up existing seed data (idempotent)
    for table in (
        "service_preferences",
        "validation_tokens",
        "verification_tokens",
        "profiles",
    ):
        await session.execute(
            text(f"DELETE FROM {table} WHERE fiscal_code = ANY(:codes)"),
            {"codes": list(SEED_FISCAL_CODES)},
        )
    await session.commit()

    store = SqlProfileStore(session)

    await store.create(
        _profile(
            LEGACY_FC,
            "legacy@test.com",
            blocked={"svc-news": ["INBOX"], "svc-tax": ["EMAIL", "WEBHOOK"]},
        )
    )
    await store.create(
        _profile(AUTO_FC, "auto@test.com", mode=ServicesPreferencesMode.AUTO, settings_version=0)
    )
    await store.create(
        _profile(
            MANUAL_FC, "manual@test.com", mode=ServicesPreferencesMode.MANUAL, settings_version=1
        )
    )
    for settings_version in (0, 1):
        await store.create_service_preference(
            ServicePreferenceData(
                fiscal_code=MANUAL_FC,
                service_id="svc-news",
                settings_version=settings_version,
                is_inbox_enabled=settings_version == 1,
                is_email_enabled=True,
                is_webhook_enabled=True,
            )
        )
    await store.create(
        _profile(NEW_FC, "new@test.com", is_inbox_enabled=False, is_email_validated=False)
    )


async def main() -> None:
    async with async_session_maker() as session:
        await seed(session)

    print("=" * 60)
    print("  Profile seed data created successfully!")
    print("=" * 60)
    print()
    print(f"  LEGACY with block-list:     {LEGACY_FC}")
    print(f"  AUTO (settings v0):         {AUTO_FC}")
    print(f"  MANUAL (settings v1):       {MANUAL_FC}")
    print(f"  LEGACY, inbox off:          {NEW_FC}")
    print()
    print("  All profiles are at version 0.")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
