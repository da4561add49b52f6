"""
Subscription model for tracking per-user billing state.

CRITICAL: One subscription per user, created at registration and never deleted.
Paid state is synced from the billing provider via verified webhook events.
Feature limits are NOT stored here - they are derived from `plan` at the
moment of use (see services/entitlement_policy.py).
"""

import enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, Enum, Index
)
from sqlalchemy.orm import relationship

from langlearn.db_base import Base
from langlearn.models.base import (
    TimestampMixin, UTCDateTime, JSONType, generate_uuid, utcnow
)


class Plan(str, enum.Enum):
    """Subscription tiers."""
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    """Canonical billing provider subscription statuses."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class BillingCycle(str, enum.Enum):
    """Billing interval for paid plans."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base, TimestampMixin):
    """
    Billing state for a single user account.

    CRITICAL DESIGN:
    - ONE subscription per user (unique user_id)
    - external_subscription_ref is only ever written by the reconciler
    - Every read-modify-write runs under a row lock plus the row_version
      optimistic check (version_id_col)
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="Owning account, one subscription per user"
    )

    # Billing provider references (None = not yet linked)
    external_customer_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider customer ID"
    )
    external_subscription_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider subscription ID (set by reconciler only)"
    )
    price_ref = Column(
        String(255),
        nullable=True,
        comment="Last provider price ID applied"
    )

    # Plan and lifecycle
    plan = Column(
        Enum(*[p.value for p in Plan], name="subscription_plan"),
        default=Plan.FREE.value,
        nullable=False,
    )
    status = Column(
        Enum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        default=SubscriptionStatus.ACTIVE.value,
        nullable=False,
        index=True,
    )
    billing_cycle = Column(
        Enum(*[c.value for c in BillingCycle], name="billing_cycle"),
        nullable=True,
        comment="Meaningless for the free plan"
    )

    # Billing period
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True, index=True)
    cancel_at_period_end = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="User-declared intent, independent of status"
    )
    trial_start = Column(UTCDateTime, nullable=True)
    trial_end = Column(UTCDateTime, nullable=True)
    canceled_at = Column(UTCDateTime, nullable=True)

    # Usage counters (mutated only by the usage meter)
    usage_current_period = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment="feature -> count since usage_last_reset"
    )
    usage_lifetime = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment="feature -> count, never reset"
    )
    usage_last_reset = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )

    discount = Column(
        JSONType,
        nullable=True,
        comment="Coupon metadata: coupon_id, percent_off, amount_off, valid_until"
    )

    # Ordering / concurrency
    last_event_version = Column(
        BigInteger,
        nullable=True,
        comment="Version of the newest provider subscription event applied"
    )
    row_version = Column(Integer, nullable=False)

    payment_history = relationship(
        "PaymentRecord",
        back_populates="subscription",
        order_by="PaymentRecord.paid_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": row_version}

    __table_args__ = (
        Index("ix_subscriptions_status_plan", "status", "plan"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, status={self.status})>"

    @property
    def is_linked(self) -> bool:
        """True once a billing provider customer exists for this user."""
        return self.external_customer_ref is not None
