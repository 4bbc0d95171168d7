"""Service preference documents and the migration batch that carries them."""

from pydantic import Field

from profile_saga.schemas.common import BaseSchema


def make_service_preference_document_id(
    fiscal_code: str, service_id: str, settings_version: int
) -> str:
    """Stable id of a preference document; zero-padded so ids sort by version."""
    return f"{fiscal_code}-{service_id}-{settings_version:016d}"


class ServicePreferenceData(BaseSchema):
    """Per-service channel switches for one settings version."""

    fiscal_code: str
    service_id: str
    settings_version: int = Field(..., ge=0)
    is_inbox_enabled: bool
    is_email_enabled: bool
    is_webhook_enabled: bool

    @property
    def document_id(self) -> str:
        return make_service_preference_document_id(
            self.fiscal_code, self.service_id, self.settings_version
        )


class MigrationBatch(BaseSchema):
    """Queue message asking the migration consumer to create preference documents."""

    fiscal_code: str
    settings_version: int
    preferences: list[ServicePreferenceData]


class MigrationResult(BaseSchema):
    """Outcome of applying a migration batch."""

    fiscal_code: str
    created: int
    already_existing: int
