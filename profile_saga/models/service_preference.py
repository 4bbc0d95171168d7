"""ServicePreference model: per-service channel switches for one settings version."""

from sqlalchemy import Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from profile_saga.models.base import Base


class ServicePreference(Base):
    """Immutable preference document for a user, a service and a settings version.

    A new settings version produces new rows; existing rows are never mutated.
    """

    __tablename__ = "service_preferences"
    __table_args__ = (
        UniqueConstraint(
            "fiscal_code",
            "service_id",
            "settings_version",
            name="uq_service_preferences_fiscal_code_service_version",
        ),
    )

    # "{fiscal_code}-{service_id}-{settings_version:016d}"
    document_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    fiscal_code: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    settings_version: Mapped[int] = mapped_column(Integer, nullable=False)

    is_inbox_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_webhook_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)

    def __repr__(self) -> str:
        return f"<ServicePreference {self.document_id}>"
