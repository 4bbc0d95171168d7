"""Profile read and write endpoints.

Every successful write starts the upserted-profile saga in a Celery worker.
Domain errors (not found, conflicts, an unreachable broker) are turned into
HTTP responses by the application's exception handlers.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Path, status
from kombu.exceptions import OperationalError

from profile_saga.core.deps import ProfileServiceDep
from profile_saga.core.errors import SagaDispatchError
from profile_saga.schemas.profile import (
    NewProfilePayload,
    ProfileChangeEvent,
    ProfilePayload,
    RetrievedProfile,
)

logger = logging.getLogger(__name__)

router = APIRouter()

FISCAL_CODE_PATTERN = (
    r"^[A-Z]{6}[0-9LMNPQRSTUV]{2}[ABCDEHLMPRST][0-9LMNPQRSTUV]{2}[A-Z][0-9LMNPQRSTUV]{3}[A-Z]$"
)
FiscalCode = Annotated[str, Path(pattern=FISCAL_CODE_PATTERN, description="User fiscal code")]


def _dispatch(task: Any, *args: Any) -> str:
    """Send ``task`` to the broker, raising ``SagaDispatchError`` when it is unreachable."""
    try:
        result = task.delay(*args)
    except OperationalError as e:
        raise SagaDispatchError(f"Cannot schedule {task.name}: {e}") from e
    return str(result.id)


def _start_saga(event: ProfileChangeEvent) -> str:
    from profile_saga.workers.tasks.profiles import run_upserted_profile_saga

    payload = event.model_dump(mode="json")
    try:
        saga_id = _dispatch(run_upserted_profile_saga, payload)
    except SagaDispatchError:
        # The profile is already stored; the event is logged so it can be replayed.
        logger.error(
            "Saga not scheduled: fiscal_code=%s operation=%s version=%s event=%s",
            event.fiscal_code,
            event.operation.value,
            event.new_profile.version,
            payload,
        )
        raise
    logger.info(
        "Saga scheduled: fiscal_code=%s operation=%s saga_id=%s",
        event.fiscal_code,
        event.operation.value,
        saga_id,
    )
    return saga_id


async def _unvalidated_email(service: ProfileServiceDep, fiscal_code: str) -> str:
    profile = await service.get_profile(fiscal_code)
    if profile.email is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The profile has no email",
        )
    if profile.is_email_validated:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The email is already validated",
        )
    return profile.email


@router.get("/{fiscal_code}", response_model=RetrievedProfile)
async def get_profile(fiscal_code: FiscalCode, service: ProfileServiceDep) -> RetrievedProfile:
    """Return the latest version of a profile."""
    return await service.get_profile(fiscal_code)


@router.post(
    "/{fiscal_code}",
    response_model=RetrievedProfile,
    status_code=status.HTTP_201_CREATED,
)
async def create_profile(
    fiscal_code: FiscalCode,
    payload: NewProfilePayload,
    service: ProfileServiceDep,
) -> RetrievedProfile:
    """Create a profile. 409 if one already exists."""
    event = await service.create_profile(fiscal_code, payload)
    _start_saga(event)
    return event.new_profile


@router.put("/{fiscal_code}", response_model=RetrievedProfile)
async def update_profile(
    fiscal_code: FiscalCode,
    payload: ProfilePayload,
    service: ProfileServiceDep,
) -> RetrievedProfile:
    """Write the next profile version.

    ``payload.version`` must be the current version. Preferences mode changes
    follow the LEGACY/AUTO/MANUAL rules; a rejected change answers 409.
    """
    event = await service.update_profile(fiscal_code, payload)
    _start_saga(event)
    return event.new_profile


@router.post(
    "/{fiscal_code}/email-validation-process",
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_email_validation_process(
    fiscal_code: FiscalCode,
    service: ProfileServiceDep,
) -> dict[str, str]:
    """Send a fresh validation email for the current, not yet validated, address."""
    email = await _unvalidated_email(service, fiscal_code)

    from profile_saga.workers.tasks.profiles import run_email_validation_process

    task_id = _dispatch(run_email_validation_process, fiscal_code, email)
    logger.info("Email validation process scheduled: fiscal_code=%s id=%s", fiscal_code, task_id)
    return {"status": "accepted"}


@router.post(
    "/{fiscal_code}/email-verification-process",
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_email_verification_process(
    fiscal_code: FiscalCode,
    service: ProfileServiceDep,
) -> dict[str, str]:
    """Send a verification link for the profile's current email. 404 without a profile."""
    email = await _unvalidated_email(service, fiscal_code)

    from profile_saga.workers.tasks.profiles import run_email_verification_process

    task_id = _dispatch(run_email_verification_process, fiscal_code, email)
    logger.info(
        "Email verification process scheduled: fiscal_code=%s id=%s", fiscal_code, task_id
    )
    return {"status": "accepted"}
