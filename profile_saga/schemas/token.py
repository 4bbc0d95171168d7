"""Token schemas."""

from datetime import datetime

from profile_saga.schemas.common import BaseSchema


class IssuedToken(BaseSchema):
    """A freshly issued token; ``validator`` is never persisted."""

    token_id: str
    validator: str
    invalid_after: datetime

    @property
    def token(self) -> str:
        """The ``{token_id}:{validator}`` string embedded in confirmation links."""
        return f"{self.token_id}:{self.validator}"


class EmailConfirmationResponse(BaseSchema):
    fiscal_code: str
    email: str
    version: int
