"""Subscription feed planning.

Turns a profile change into the subscribe/unsubscribe events the feed must
record. Pure: the saga runs this on every replay and relies on getting the
same plan back for the same event.
"""

from dataclasses import dataclass, field

from profile_saga.models.profile import BlockedChannel, ServicesPreferencesMode
from profile_saga.schemas.profile import (
    BlockedInboxOrChannels,
    ProfileChangeEvent,
    ServicesPreferencesSettings,
)
from profile_saga.schemas.subscription import (
    SubscriptionEvent,
    SubscriptionKind,
    SubscriptionOperation,
)


@dataclass(frozen=True)
class BlockedServicesDiff:
    """Service ids whose inbox block was lifted (subscribed) or added (unsubscribed)."""

    subscribed: list[str] = field(default_factory=list)
    unsubscribed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.subscribed and not self.unsubscribed


@dataclass(frozen=True)
class FeedPlan:
    """Events to publish, plus the prior settings version to read first, if any."""

    events: list[SubscriptionEvent] = field(default_factory=list)
    previous_settings_version: int | None = None


def _inbox_blocked(blocked: BlockedInboxOrChannels | None) -> set[str]:
    return {
        service_id
        for service_id, channels in (blocked or {}).items()
        if BlockedChannel.INBOX in channels
    }


def diff_blocked_services(
    old_blocked: BlockedInboxOrChannels | None,
    new_blocked: BlockedInboxOrChannels | None,
) -> BlockedServicesDiff:
    """Compare the INBOX block sets of two legacy block-lists.

    Other channels never produce feed events. Results are sorted so the
    event order is stable across replays.
    """
    old_set = _inbox_blocked(old_blocked)
    new_set = _inbox_blocked(new_blocked)
    return BlockedServicesDiff(
        subscribed=sorted(old_set - new_set),
        unsubscribed=sorted(new_set - old_set),
    )


def plan_feed_update(
    event: ProfileChangeEvent,
    new_settings: ServicesPreferencesSettings,
) -> FeedPlan:
    """Compute feed events for a change whose resulting preferences are ``new_settings``."""
    fiscal_code = event.fiscal_code
    version = event.new_profile.version

    def _event(
        operation: SubscriptionOperation, service_id: str | None = None
    ) -> SubscriptionEvent:
        return SubscriptionEvent(
            fiscal_code=fiscal_code,
            operation=operation,
            subscription_kind=(
                SubscriptionKind.SERVICE if service_id else SubscriptionKind.PROFILE
            ),
            service_id=service_id,
            version=version,
            updated_at=event.updated_at,
        )

    if event.old_profile is None:
        return FeedPlan(events=[_event(SubscriptionOperation.SUBSCRIBED)])

    old_settings = event.old_profile.services_preferences_settings

    if old_settings.mode == new_settings.mode:
        if new_settings.mode != ServicesPreferencesMode.LEGACY:
            return FeedPlan()
        diff = diff_blocked_services(
            event.old_profile.blocked_inbox_or_channels,
            event.new_profile.blocked_inbox_or_channels,
        )
        return FeedPlan(
            events=[_event(SubscriptionOperation.SUBSCRIBED, s) for s in diff.subscribed]
            + [_event(SubscriptionOperation.UNSUBSCRIBED, s) for s in diff.unsubscribed]
        )

    # Mode transition: one profile-level event at most.
    previous_settings_version = (
        old_settings.version if old_settings.mode != ServicesPreferencesMode.LEGACY else None
    )
    if new_settings.mode == ServicesPreferencesMode.MANUAL:
        events = [_event(SubscriptionOperation.UNSUBSCRIBED)]
    elif old_settings.mode == ServicesPreferencesMode.LEGACY:
        # LEGACY -> AUTO keeps the user subscribed; nothing to record.
        events = []
    else:
        events = [_event(SubscriptionOperation.SUBSCRIBED)]
    return FeedPlan(events=events, previous_settings_version=previous_settings_version)
