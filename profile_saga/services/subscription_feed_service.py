"""Subscription feed sink backed by the ``subscription_feed`` table."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from profile_saga.core.errors import TransientStoreError
from profile_saga.models.subscription_feed import SubscriptionFeedEntry
from profile_saga.schemas.subscription import (
    SubscriptionEvent,
    SubscriptionKind,
    SubscriptionOperation,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedKeys:
    """Entity keys for the entry to write and the opposite entry to clear."""

    partition_key: str
    row_key: str
    opposite_partition_key: str
    opposite_row_key: str


def feed_keys(event: SubscriptionEvent) -> FeedKeys:
    """Compute feed keys for an event.

    Profile events: ``P-<YYYY-MM-DD>-<S|U>``
    Service events: ``S-<YYYY-MM-DD>-<SERVICE_ID>-<S|U>``

    The date is the UTC day of ``updated_at``; row keys append the hex sha256
    of the fiscal code so the feed never stores it in clear.
    """
    day = event.updated_at.astimezone(UTC).strftime("%Y-%m-%d")
    fiscal_code_hash = hashlib.sha256(event.fiscal_code.encode()).hexdigest()
    if event.subscription_kind == SubscriptionKind.PROFILE:
        prefix = f"P-{day}"
    else:
        prefix = f"S-{day}-{event.service_id}"

    subscribed = f"{prefix}-S"
    unsubscribed = f"{prefix}-U"
    own, opposite = (
        (subscribed, unsubscribed)
        if event.operation == SubscriptionOperation.SUBSCRIBED
        else (unsubscribed, subscribed)
    )
    return FeedKeys(
        partition_key=own,
        row_key=f"{own}-{fiscal_code_hash}",
        opposite_partition_key=opposite,
        opposite_row_key=f"{opposite}-{fiscal_code_hash}",
    )


class SubscriptionFeedService:
    """Records subscribe/unsubscribe events as daily feed entries."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def publish(self, event: SubscriptionEvent) -> bool:
        """Move the user into the entry matching ``event.operation`` for that day.

        Events older than what is already recorded are ignored, so republishing
        after a retry is harmless. Returns whether the feed changed.
        """
        keys = feed_keys(event)
        try:
            opposite_version = (
                await self.db.execute(
                    select(SubscriptionFeedEntry.version).where(
                        SubscriptionFeedEntry.partition_key == keys.opposite_partition_key,
                        SubscriptionFeedEntry.row_key == keys.opposite_row_key,
                    )
                )
            ).scalar_one_or_none()
            if opposite_version is not None and opposite_version > event.version:
                logger.info(
                    "Stale feed event ignored: partition=%s version=%s recorded=%s",
                    keys.partition_key,
                    event.version,
                    opposite_version,
                )
                return False

            await self.db.execute(
                delete(SubscriptionFeedEntry).where(
                    SubscriptionFeedEntry.partition_key == keys.opposite_partition_key,
                    SubscriptionFeedEntry.row_key == keys.opposite_row_key,
                )
            )
            stmt = pg_insert(SubscriptionFeedEntry).values(
                partition_key=keys.partition_key,
                row_key=keys.row_key,
                version=event.version,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_subscription_feed_partition_row",
                set_={"version": stmt.excluded.version, "updated_at": func.now()},
                where=SubscriptionFeedEntry.version < stmt.excluded.version,
            )
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise TransientStoreError(f"Cannot update subscription feed: {e}") from e

        logger.info(
            "Subscription feed updated: kind=%s operation=%s partition=%s version=%s",
            event.subscription_kind.value,
            event.operation.value,
            keys.partition_key,
            event.version,
        )
        return True
