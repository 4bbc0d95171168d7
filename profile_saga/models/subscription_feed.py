"""SubscriptionFeedEntry model: daily subscribe/unsubscribe ledger per user."""

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from profile_saga.models.base import Base, MutableMixin


class SubscriptionFeedEntry(MutableMixin, Base):
    """One day's subscription state for a hashed fiscal code.

    ``partition_key`` is ``P-<date>-<S|U>`` for profile-level entries or
    ``S-<date>-<service_id>-<S|U>`` for service-level ones; ``row_key`` is the
    partition key followed by the sha256 of the fiscal code.
    """

    __tablename__ = "subscription_feed"
    __table_args__ = (
        UniqueConstraint("partition_key", "row_key", name="uq_subscription_feed_partition_row"),
    )

    partition_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    row_key: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionFeedEntry {self.partition_key}/{self.row_key[:8]} v{self.version}>"
