"""Schemas shared by the API and the workers."""

from typing import Literal

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Reads ORM rows directly and accepts field names or aliases."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class HealthResponse(BaseSchema):
    status: Literal["healthy", "unhealthy"]
    version: str
    environment: str
    checks: dict[str, str]


class ErrorResponse(BaseSchema):
    """Body of every 4xx/5xx raised from a domain error."""

    detail: str
