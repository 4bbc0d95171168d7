"""Validation and verification token models.

Only the sha256 of the validator is stored (``row_key``); the raw validator
leaves the process once, embedded in a confirmation link.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from profile_saga.models.base import Base


class ValidationToken(Base):
    """Proves ownership of an email address for a profile."""

    __tablename__ = "validation_tokens"
    __table_args__ = (
        UniqueConstraint("partition_key", "row_key", name="uq_validation_tokens_partition_row"),
    )

    partition_key: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    row_key: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_code: Mapped[str] = mapped_column(String(16), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    invalid_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ValidationToken {self.partition_key}>"


class VerificationToken(Base):
    """Proves possession of a one-time secret for a fiscal code."""

    __tablename__ = "verification_tokens"
    __table_args__ = (
        UniqueConstraint(
            "partition_key", "row_key", name="uq_verification_tokens_partition_row"
        ),
    )

    partition_key: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    row_key: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_code: Mapped[str] = mapped_column(String(16), nullable=False)
    invalid_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<VerificationToken {self.partition_key}>"
