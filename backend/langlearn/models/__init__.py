"""
Database models for subscriptions and payment history.
"""

from langlearn.models.base import TimestampMixin, UTCDateTime, JSONType
from langlearn.models.subscription import (
    Subscription, Plan, SubscriptionStatus, BillingCycle
)
from langlearn.models.payment_record import PaymentRecord, PaymentOutcome

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "JSONType",
    "Subscription",
    "Plan",
    "SubscriptionStatus",
    "BillingCycle",
    "PaymentRecord",
    "PaymentOutcome",
]
