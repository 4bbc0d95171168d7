"""Profile model: an append-only chain of versions per fiscal code."""

import enum

from sqlalchemy import Boolean, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from profile_saga.models.base import Base

# Settings version carried by profiles that never left LEGACY mode.
LEGACY_SETTINGS_VERSION = -1


class ServicesPreferencesMode(str, enum.Enum):
    """Notification-preferences regime of a profile."""

    LEGACY = "LEGACY"
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class BlockedChannel(str, enum.Enum):
    """Channels a user can opt out of for a single service while in LEGACY mode."""

    INBOX = "INBOX"
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"


class Profile(Base):
    """One version of a user profile.

    Rows are never updated in place: every write inserts the next version and
    the unique (fiscal_code, version) constraint rejects concurrent writers
    targeting the same base version.
    """

    __tablename__ = "profiles"
    __table_args__ = (
        UniqueConstraint("fiscal_code", "version", name="uq_profiles_fiscal_code_version"),
        Index("ix_profiles_fiscal_code_version_desc", "fiscal_code", "version"),
    )

    fiscal_code: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Contact
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_email_validated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Channels
    is_inbox_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_webhook_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    accepted_tos_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Preferences
    services_preferences_mode: Mapped[ServicesPreferencesMode] = mapped_column(
        Enum(
            ServicesPreferencesMode,
            name="services_preferences_mode",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=ServicesPreferencesMode.LEGACY,
        nullable=False,
    )
    services_preferences_version: Mapped[int] = mapped_column(
        Integer,
        default=LEGACY_SETTINGS_VERSION,
        nullable=False,
    )
    # service_id -> list of BlockedChannel values; only meaningful in LEGACY mode
    blocked_inbox_or_channels: Mapped[dict[str, list[str]] | None] = mapped_column(
        JSONB,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Profile {self.fiscal_code} v{self.version} ({self.services_preferences_mode.value})>"
