"""Subscription feed events."""

import enum
from datetime import datetime

from pydantic import model_validator

from profile_saga.schemas.common import BaseSchema
from profile_saga.schemas.preferences import ServicePreferenceData


class SubscriptionOperation(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class SubscriptionKind(str, enum.Enum):
    PROFILE = "PROFILE"
    SERVICE = "SERVICE"


class SubscriptionEvent(BaseSchema):
    """A subscribe/unsubscribe signal at profile or service granularity."""

    fiscal_code: str
    operation: SubscriptionOperation
    subscription_kind: SubscriptionKind
    service_id: str | None = None
    version: int
    updated_at: datetime
    # Preferences at the prior settings version, read before AUTO/MANUAL changes.
    previous_preferences: list[ServicePreferenceData] | None = None

    @model_validator(mode="after")
    def service_id_matches_kind(self) -> "SubscriptionEvent":
        if (self.subscription_kind == SubscriptionKind.SERVICE) != (self.service_id is not None):
            raise ValueError("service_id is required for SERVICE events and only for them")
        return self
