"""
Billing event snapshot schema.

A snapshot is the provider-neutral, already signature-verified view of one
billing provider event. The reconciler consumes nothing else; provider
specific payloads are converted by integrations/stripe_events.py.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from langlearn.models.subscription import BillingCycle, SubscriptionStatus


class EventKind(str, enum.Enum):
    """Kinds of billing events the reconciler applies."""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


PAYMENT_EVENT_KINDS = frozenset({
    EventKind.PAYMENT_SUCCEEDED,
    EventKind.PAYMENT_FAILED,
})


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PaymentSnapshot(BaseModel):
    """One payment attempt carried by a payment event."""

    model_config = ConfigDict(frozen=True)

    payment_id: str = Field(..., min_length=1, description="Provider payment/invoice ID")
    amount_cents: int = Field(..., ge=0)
    currency: str = Field("usd", min_length=3, max_length=10)
    paid_at: datetime
    failure_reason: Optional[str] = None

    @field_validator("paid_at")
    @classmethod
    def paid_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("currency")
    @classmethod
    def currency_lower(cls, v: str) -> str:
        return v.lower()


class BillingEventSnapshot(BaseModel):
    """
    Verified state snapshot from the billing provider.

    `version` is monotonic per provider account (the provider's event
    creation time) and orders subscription events.
    """

    model_config = ConfigDict(frozen=True)

    event_kind: EventKind
    event_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    price_ref: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    discount: Optional[Dict[str, Any]] = None
    version: int = Field(..., ge=0)
    payment: Optional[PaymentSnapshot] = None

    @field_validator(
        "current_period_start", "current_period_end",
        "canceled_at", "trial_start", "trial_end",
    )
    @classmethod
    def timestamps_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def is_payment_event(self) -> bool:
        return self.event_kind in PAYMENT_EVENT_KINDS

    def missing_fields(self) -> List[str]:
        """
        Fields this event kind needs that the snapshot does not carry.

        A non-empty result means the event must be failed for redelivery,
        never partially applied.
        """
        missing = []
        if self.event_kind in (EventKind.SUBSCRIPTION_CREATED, EventKind.SUBSCRIPTION_UPDATED):
            for name in ("subscription_ref", "status", "current_period_start",
                         "current_period_end", "price_ref"):
                if getattr(self, name) is None:
                    missing.append(name)
        elif self.event_kind == EventKind.SUBSCRIPTION_DELETED:
            if self.subscription_ref is None:
                missing.append("subscription_ref")
        elif self.is_payment_event:
            if self.payment is None:
                missing.append("payment")
        return missing
