"""Email validation token confirmation."""

from fastapi import APIRouter, Query, Request

from profile_saga.core.config import settings
from profile_saga.core.deps import ProfileServiceDep, TokenIssuerDep
from profile_saga.core.rate_limit import limiter
from profile_saga.schemas.token import EmailConfirmationResponse

router = APIRouter()


@router.get("/confirm", response_model=EmailConfirmationResponse)
@limiter.limit(settings.email_validation_rate_limit)
async def confirm_email(
    request: Request,  # noqa: ARG001  # required by slowapi
    issuer: TokenIssuerDep,
    service: ProfileServiceDep,
    token: str = Query(..., min_length=3, description="Token in the form {tokenId}:{validator}"),
) -> EmailConfirmationResponse:
    """Mark the profile email as validated if the token is valid and the email unchanged."""
    entity = await issuer.confirm_validation_token(token)
    profile = await service.mark_email_validated(entity.fiscal_code, entity.email)
    return EmailConfirmationResponse(
        fiscal_code=profile.fiscal_code,
        email=entity.email,
        version=profile.version,
    )
