"""
PaymentRecord model for the per-subscription payment history.

CRITICAL: This table is APPEND-ONLY.
Never update or delete payment records - only insert new ones.
Duplicate deliveries of the same provider payment are rejected by the
(subscription_id, payment_id) unique constraint.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Enum, Text,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from langlearn.db_base import Base
from langlearn.models.base import UTCDateTime, generate_uuid, utcnow


class PaymentOutcome(str, enum.Enum):
    """Outcome of a provider payment attempt."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    CANCELED = "canceled"


class PaymentRecord(Base):
    """
    Immutable record of a single payment attempt.

    NOTE: Does not use TimestampMixin - there is no updated_at on an
    append-only row. paid_at is the provider time, created_at the insert time.
    """

    __tablename__ = "payment_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    payment_id = Column(
        String(255),
        nullable=False,
        comment="Provider payment identifier (deduplication key)"
    )
    amount_cents = Column(
        Integer,
        nullable=False,
        comment="Monetary amount in minor units"
    )
    currency = Column(
        String(10),
        nullable=False,
        default="usd",
    )
    outcome = Column(
        Enum(*[o.value for o in PaymentOutcome], name="payment_outcome"),
        nullable=False,
    )
    paid_at = Column(
        UTCDateTime,
        nullable=False,
        comment="When the provider reports the payment happened"
    )
    failure_reason = Column(Text, nullable=True)
    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="When the record was inserted"
    )

    subscription = relationship("Subscription", back_populates="payment_history")

    __table_args__ = (
        UniqueConstraint("subscription_id", "payment_id", name="uq_payment_records_payment"),
        Index("ix_payment_records_subscription_time", "subscription_id", "paid_at"),
    )

    def __repr__(self) -> str:
        return f"<PaymentRecord(payment_id={self.payment_id}, outcome={self.outcome}, amount_cents={self.amount_cents})>"
