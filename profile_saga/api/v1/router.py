"""API v1 router combining all route modules."""

from fastapi import APIRouter

from profile_saga.api.v1 import email_validation, email_verification, health, profiles

api_router = APIRouter()

# Health check routes (no prefix)
api_router.include_router(health.router)

# Profiles
api_router.include_router(
    profiles.router,
    prefix="/profiles",
    tags=["profiles"],
)

# Email validation links (public, rate limited)
api_router.include_router(
    email_validation.router,
    prefix="/email-validation",
    tags=["email-validation"],
)

api_router.include_router(
    email_verification.router,
    prefix="/email-verification",
    tags=["email-verification"],
)
