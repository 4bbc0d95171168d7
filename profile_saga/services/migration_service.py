"""Legacy block-list to per-service preference migration."""

import logging
import re

from profile_saga.models.profile import BlockedChannel, ServicesPreferencesMode
from profile_saga.schemas.preferences import (
    MigrationBatch,
    MigrationResult,
    ServicePreferenceData,
)
from profile_saga.schemas.profile import BlockedInboxOrChannels
from profile_saga.services.profile_store import ProfileStore

logger = logging.getLogger(__name__)

SERVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def is_valid_service_id(service_id: str) -> bool:
    return bool(SERVICE_ID_PATTERN.match(service_id))


def convert_blocked_channels(
    fiscal_code: str,
    blocked_inbox_or_channels: BlockedInboxOrChannels | None,
    settings_version: int,
) -> list[ServicePreferenceData]:
    """Turn a legacy block-list into explicit preference documents.

    A channel is enabled unless it appears in the service's block list.
    Keys that are not valid service ids are skipped.
    """
    preferences = []
    for service_id, channels in sorted((blocked_inbox_or_channels or {}).items()):
        if not is_valid_service_id(service_id):
            logger.warning(
                "Skipping invalid service id in legacy block-list: fiscal_code=%s service_id=%r",
                fiscal_code,
                service_id,
            )
            continue
        blocked = set(channels)
        preferences.append(
            ServicePreferenceData(
                fiscal_code=fiscal_code,
                service_id=service_id,
                settings_version=settings_version,
                is_inbox_enabled=BlockedChannel.INBOX not in blocked,
                is_email_enabled=BlockedChannel.EMAIL not in blocked,
                is_webhook_enabled=BlockedChannel.WEBHOOK not in blocked,
            )
        )
    return preferences


def should_migrate(
    old_mode: ServicesPreferencesMode,
    new_mode: ServicesPreferencesMode,
    old_blocked: BlockedInboxOrChannels | None,
) -> bool:
    """Migration runs once, when leaving LEGACY with a non-empty block-list."""
    return (
        old_mode == ServicesPreferencesMode.LEGACY
        and new_mode in (ServicesPreferencesMode.AUTO, ServicesPreferencesMode.MANUAL)
        and bool(old_blocked)
    )


class MigrationService:
    """Applies migration batches against the profile store."""

    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def apply(self, batch: MigrationBatch) -> MigrationResult:
        """Create every document in the batch.

        Existing documents count as done. Any other failure propagates so the
        whole batch is retried; creation is idempotent so that is safe.
        """
        created = 0
        already_existing = 0
        for preference in batch.preferences:
            if await self.store.create_service_preference(preference):
                created += 1
            else:
                already_existing += 1

        logger.info(
            "Migration applied: fiscal_code=%s settings_version=%s created=%s existing=%s",
            batch.fiscal_code,
            batch.settings_version,
            created,
            already_existing,
        )
        return MigrationResult(
            fiscal_code=batch.fiscal_code,
            created=created,
            already_existing=already_existing,
        )
