"""Pydantic schemas for API requests, responses and saga messages."""

from profile_saga.schemas.common import BaseSchema, ErrorResponse, HealthResponse
from profile_saga.schemas.preferences import (
    MigrationBatch,
    MigrationResult,
    ServicePreferenceData,
    make_service_preference_document_id,
)
from profile_saga.schemas.profile import (
    BlockedInboxOrChannels,
    NewProfilePayload,
    ProfileChangeEvent,
    ProfileOperation,
    ProfilePayload,
    RequestedPreferencesSettings,
    RetrievedProfile,
    ServicesPreferencesSettings,
)
from profile_saga.schemas.subscription import (
    SubscriptionEvent,
    SubscriptionKind,
    SubscriptionOperation,
)
from profile_saga.schemas.token import EmailConfirmationResponse, IssuedToken

__all__ = [
    # Common
    "BaseSchema",
    "ErrorResponse",
    "HealthResponse",
    # Profiles
    "BlockedInboxOrChannels",
    "NewProfilePayload",
    "ProfileChangeEvent",
    "ProfileOperation",
    "ProfilePayload",
    "RequestedPreferencesSettings",
    "RetrievedProfile",
    "ServicesPreferencesSettings",
    # Preferences
    "MigrationBatch",
    "MigrationResult",
    "ServicePreferenceData",
    "make_service_preference_document_id",
    # Feed
    "SubscriptionEvent",
    "SubscriptionKind",
    "SubscriptionOperation",
    # Tokens
    "EmailConfirmationResponse",
    "IssuedToken",
]
