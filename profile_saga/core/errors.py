"""Exception taxonomy shared by the API, services and saga workers.

Pure rule components never raise these for business-rule violations; they
return typed outcomes (see ``services.preferences.Conflict``). Only I/O-bound
code raises, and the saga decides what to retry based on the class.
"""


class ProfileSagaError(Exception):
    """Base class for all domain errors."""


class InvalidEventError(ProfileSagaError):
    """A profile change event could not be decoded. Never retried."""


class ConflictError(ProfileSagaError):
    """A version or preferences-mode rule was violated. Surfaced, never retried."""


class ProfileNotFoundError(ProfileSagaError):
    """No profile exists for the requested fiscal code."""

    def __init__(self, fiscal_code: str) -> None:
        super().__init__(f"Profile not found: {fiscal_code}")
        self.fiscal_code = fiscal_code


class TransientStoreError(ProfileSagaError):
    """The database failed in a way that may succeed on retry."""


class TransientTransportError(ProfileSagaError):
    """An email, message or queue transport failed in a retryable way."""


class PermanentTransportError(ProfileSagaError):
    """A transport rejected the request; retrying will not help."""


class InvalidTokenError(ProfileSagaError):
    """A presented validation token is malformed, unknown, expired or mismatched."""


class SagaDispatchError(ProfileSagaError):
    """A write was stored but the broker refused the task that runs its side effects."""


class ExhaustedRetriesError(ProfileSagaError):
    """A saga step kept failing until its retry policy ran out."""

    def __init__(self, step: str, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(f"Step {step} failed after {attempts} attempts: {cause!r}")
        self.step = step
        self.attempts = attempts
        self.cause = cause


# Failures a saga step gives up on immediately; everything else is retried.
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    InvalidEventError,
    ConflictError,
    PermanentTransportError,
    InvalidTokenError,
)
