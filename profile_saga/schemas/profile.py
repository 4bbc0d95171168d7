"""Profile schemas: stored profile snapshots, write payloads and change events."""

import enum
from datetime import datetime

from pydantic import Field, model_validator

from profile_saga.models.profile import (
    LEGACY_SETTINGS_VERSION,
    BlockedChannel,
    ServicesPreferencesMode,
)
from profile_saga.schemas.common import BaseSchema

BlockedInboxOrChannels = dict[str, list[BlockedChannel]]


class ProfileOperation(str, enum.Enum):
    """Kind of write that produced a profile change event."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"


class ServicesPreferencesSettings(BaseSchema):
    """Preferences mode plus its settings-version counter."""

    mode: ServicesPreferencesMode = ServicesPreferencesMode.LEGACY
    version: int = LEGACY_SETTINGS_VERSION


class RequestedPreferencesSettings(BaseSchema):
    """Preferences mode requested by a client on update."""

    mode: ServicesPreferencesMode


class RetrievedProfile(BaseSchema):
    """A stored profile version as read from the profile store."""

    fiscal_code: str = Field(..., min_length=1, max_length=16)
    version: int = Field(..., ge=0)
    email: str | None = None
    is_email_validated: bool = False
    is_inbox_enabled: bool = False
    is_webhook_enabled: bool = False
    is_email_enabled: bool = True
    accepted_tos_version: int | None = None
    services_preferences_settings: ServicesPreferencesSettings = Field(
        default_factory=ServicesPreferencesSettings
    )
    blocked_inbox_or_channels: BlockedInboxOrChannels | None = None

    @property
    def mode(self) -> ServicesPreferencesMode:
        return self.services_preferences_settings.mode


class NewProfilePayload(BaseSchema):
    """Request body for profile creation."""

    email: str | None = Field(None, max_length=255)
    is_inbox_enabled: bool = False
    is_webhook_enabled: bool = False
    accepted_tos_version: int | None = Field(None, ge=0)


class ProfilePayload(BaseSchema):
    """Request body for a profile update; ``version`` must match the current one."""

    version: int = Field(..., ge=0)
    email: str | None = Field(None, max_length=255)
    is_inbox_enabled: bool | None = None
    is_webhook_enabled: bool | None = None
    is_email_enabled: bool | None = None
    accepted_tos_version: int | None = Field(None, ge=0)
    blocked_inbox_or_channels: BlockedInboxOrChannels | None = None
    services_preferences_settings: RequestedPreferencesSettings | None = None


class ProfileChangeEvent(BaseSchema):
    """Sole input of the upserted-profile saga."""

    new_profile: RetrievedProfile
    old_profile: RetrievedProfile | None = None
    updated_at: datetime

    @model_validator(mode="after")
    def same_fiscal_code(self) -> "ProfileChangeEvent":
        if self.old_profile is not None and self.old_profile.fiscal_code != self.fiscal_code:
            raise ValueError("old_profile and new_profile belong to different users")
        return self

    @property
    def operation(self) -> ProfileOperation:
        return ProfileOperation.CREATED if self.old_profile is None else ProfileOperation.UPDATED

    @property
    def fiscal_code(self) -> str:
        return self.new_profile.fiscal_code
