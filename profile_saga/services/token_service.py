"""One-time validation and verification tokens.

A token is ``{token_id}:{validator}``. The id is a time-sortable 26-char
Crockford base32 string used as the lookup key; the validator is 12 random
bytes, hex encoded, of which only the sha256 is stored.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from profile_saga.core.config import settings
from profile_saga.core.errors import InvalidTokenError, TransientStoreError
from profile_saga.models.token import ValidationToken, VerificationToken
from profile_saga.schemas.token import IssuedToken

T = TypeVar("T", ValidationToken, VerificationToken)

logger = logging.getLogger(__name__)

VALIDATOR_BYTES = 12
_CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_token_id(now: datetime | None = None) -> str:
    """48-bit millisecond timestamp followed by 80 random bits."""
    timestamp_ms = int((now or datetime.now(UTC)).timestamp() * 1000)
    value = (timestamp_ms << 80) | int.from_bytes(secrets.token_bytes(10), "big")
    chars = []
    for _ in range(26):
        chars.append(_CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def hash_validator(validator: str) -> str:
    return hashlib.sha256(validator.encode()).hexdigest()


def validate_token(
    entity: ValidationToken | VerificationToken, validator: str, now: datetime
) -> bool:
    """A token is valid before ``invalid_after`` and only for its own validator."""
    if now >= entity.invalid_after:
        return False
    return hmac.compare_digest(hash_validator(validator), entity.row_key)


def parse_token(token: str) -> tuple[str, str]:
    token_id, sep, validator = token.partition(":")
    if not sep or not token_id or not validator:
        raise InvalidTokenError("Malformed token")
    return token_id, validator


class TokenIssuer:
    """Issues and checks tokens stored in the token tables."""

    def __init__(self, db: AsyncSession, ttl: timedelta | None = None) -> None:
        self.db = db
        self.ttl = ttl or timedelta(days=settings.validation_token_ttl_days)

    def _new_token(self) -> tuple[IssuedToken, str]:
        now = datetime.now(UTC)
        issued = IssuedToken(
            token_id=generate_token_id(now),
            validator=secrets.token_hex(VALIDATOR_BYTES),
            invalid_after=now + self.ttl,
        )
        return issued, hash_validator(issued.validator)

    async def _save(self, entity: ValidationToken | VerificationToken) -> None:
        self.db.add(entity)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise TransientStoreError(f"Cannot store token {entity.partition_key}: {e}") from e

    async def issue_validation_token(self, fiscal_code: str, email: str) -> IssuedToken:
        """Issue a token proving ownership of ``email``."""
        issued, row_key = self._new_token()
        await self._save(
            ValidationToken(
                partition_key=issued.token_id,
                row_key=row_key,
                fiscal_code=fiscal_code,
                email=email,
                invalid_after=issued.invalid_after,
            )
        )
        logger.info("Validation token issued: fiscal_code=%s id=%s", fiscal_code, issued.token_id)
        return issued

    async def issue_verification_token(self, fiscal_code: str) -> IssuedToken:
        issued, row_key = self._new_token()
        await self._save(
            VerificationToken(
                partition_key=issued.token_id,
                row_key=row_key,
                fiscal_code=fiscal_code,
                invalid_after=issued.invalid_after,
            )
        )
        logger.info(
            "Verification token issued: fiscal_code=%s id=%s", fiscal_code, issued.token_id
        )
        return issued

    async def _confirm(
        self, model: type[T], token: str, now: datetime | None
    ) -> T:
        token_id, validator = parse_token(token)
        query = select(model).where(
            model.partition_key == token_id,
            model.row_key == hash_validator(validator),
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Cannot read token {token_id}: {e}") from e
        entity = result.scalar_one_or_none()
        if entity is None or not validate_token(entity, validator, now or datetime.now(UTC)):
            logger.warning("Rejected token: table=%s id=%s", model.__tablename__, token_id)
            raise InvalidTokenError("Invalid or expired token")
        return entity

    async def confirm_validation_token(
        self, token: str, now: datetime | None = None
    ) -> ValidationToken:
        """Return the stored entity for a valid ``{token_id}:{validator}`` string."""
        return await self._confirm(ValidationToken, token, now)

    async def confirm_verification_token(
        self, token: str, now: datetime | None = None
    ) -> VerificationToken:
        return await self._confirm(VerificationToken, token, now)
