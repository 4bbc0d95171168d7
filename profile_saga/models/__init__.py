"""SQLAlchemy models."""

from profile_saga.models.base import Base
from profile_saga.models.profile import (
    LEGACY_SETTINGS_VERSION,
    BlockedChannel,
    Profile,
    ServicesPreferencesMode,
)
from profile_saga.models.service_preference import ServicePreference
from profile_saga.models.subscription_feed import SubscriptionFeedEntry
from profile_saga.models.token import ValidationToken, VerificationToken

__all__ = [
    # Base
    "Base",
    # Profiles
    "Profile",
    "ServicesPreferencesMode",
    "BlockedChannel",
    "LEGACY_SETTINGS_VERSION",
    # Preferences
    "ServicePreference",
    # Tokens
    "ValidationToken",
    "VerificationToken",
    # Feed
    "SubscriptionFeedEntry",
]
