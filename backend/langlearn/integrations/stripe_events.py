"""
Stripe webhook event adapter.

Converts signature-verified Stripe events into provider-neutral
BillingEventSnapshot objects for the reconciler.

Handled event types:
- customer.subscription.created / updated / deleted
- invoice.payment_succeeded / invoice.payment_failed

The snapshot version is the event's `created` timestamp (seconds).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pydantic
import stripe

from langlearn.config.settings import get_stripe_webhook_secret
from langlearn.models.subscription import BillingCycle
from langlearn.schemas.billing_event import BillingEventSnapshot, EventKind, PaymentSnapshot
from langlearn.services.billing_errors import ValidationError

logger = logging.getLogger(__name__)


STRIPE_EVENT_KINDS: Dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
}

STRIPE_INTERVALS = {
    "month": BillingCycle.MONTHLY,
    "year": BillingCycle.YEARLY,
}


def verify_stripe_event(payload: bytes, signature: Optional[str], secret: Optional[str] = None):
    """
    Verify a webhook signature and parse the event.

    Raises:
        ValidationError: Missing/invalid signature or malformed payload
    """
    secret = secret or get_stripe_webhook_secret()
    if not secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
    if not signature:
        raise ValidationError("Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe webhook signature verification failed", extra={"error": str(e)})
        raise ValidationError("Invalid webhook signature")
    except ValueError as e:
        raise ValidationError(f"Malformed webhook payload: {e}")


def dig(obj: Any, *path) -> Any:
    """Walk nested StripeObject/dict keys, None if any hop is missing."""
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, IndexError, TypeError):
            return None
    return obj


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe references are either an ID string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return dig(value, "id")


def _first_item(obj: Any) -> Any:
    return dig(obj, "items", "data", 0)


def _discount(obj: Any) -> Optional[Dict[str, Any]]:
    discount = dig(obj, "discount")
    if not discount:
        return None
    coupon = dig(discount, "coupon") or {}
    return {
        "coupon_id": dig(coupon, "id"),
        "percent_off": dig(coupon, "percent_off"),
        "amount_off": dig(coupon, "amount_off"),
        "valid_until": _ts(dig(discount, "end")).isoformat() if dig(discount, "end") else None,
    }


def _subscription_fields(obj: Any) -> Dict[str, Any]:
    item = _first_item(obj)
    # Newer API versions carry the period on the subscription item
    period_start = dig(obj, "current_period_start") or dig(item, "current_period_start")
    period_end = dig(obj, "current_period_end") or dig(item, "current_period_end")
    interval = dig(item, "price", "recurring", "interval")
    return {
        "customer_ref": _ref(dig(obj, "customer")),
        "subscription_ref": dig(obj, "id"),
        "status": dig(obj, "status"),
        "current_period_start": _ts(period_start),
        "current_period_end": _ts(period_end),
        "cancel_at_period_end": dig(obj, "cancel_at_period_end"),
        "canceled_at": _ts(dig(obj, "canceled_at")),
        "trial_start": _ts(dig(obj, "trial_start")),
        "trial_end": _ts(dig(obj, "trial_end")),
        "price_ref": dig(item, "price", "id"),
        "billing_cycle": STRIPE_INTERVALS.get(interval),
        "discount": _discount(obj),
    }


def _payment_fields(obj: Any, kind: EventKind) -> Dict[str, Any]:
    subscription_ref = _ref(dig(obj, "subscription")) or dig(
        obj, "parent", "subscription_details", "subscription"
    )
    if kind == EventKind.PAYMENT_SUCCEEDED:
        amount = dig(obj, "amount_paid")
        paid_at = dig(obj, "status_transitions", "paid_at") or dig(obj, "created")
        failure_reason = None
    else:
        amount = dig(obj, "amount_due")
        paid_at = dig(obj, "created")
        failure_reason = dig(obj, "last_finalization_error", "message") or "payment_failed"

    payment = None
    if dig(obj, "id") and amount is not None and paid_at is not None:
        payment = PaymentSnapshot(
            payment_id=obj["id"],
            amount_cents=int(amount),
            currency=dig(obj, "currency") or "usd",
            paid_at=_ts(paid_at),
            failure_reason=failure_reason,
        )
    return {
        "customer_ref": _ref(dig(obj, "customer")),
        "subscription_ref": _ref(subscription_ref),
        "payment": payment,
    }


def snapshot_from_stripe_event(event: Any) -> Optional[BillingEventSnapshot]:
    """
    Convert a verified Stripe event to a snapshot.

    Returns:
        BillingEventSnapshot, or None for event types the core ignores

    Raises:
        ValidationError: Event is malformed (no created time, bad status, ...)
    """
    event_type = dig(event, "type")
    kind = STRIPE_EVENT_KINDS.get(event_type)
    if kind is None:
        logger.info("Unhandled Stripe event type", extra={
            "event_id": dig(event, "id"),
            "event_type": event_type,
        })
        return None

    created = dig(event, "created")
    obj = dig(event, "data", "object")
    if created is None or obj is None:
        raise ValidationError(f"Stripe event {dig(event, 'id')} has no created time or object")

    try:
        if kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED):
            fields = _payment_fields(obj, kind)
        else:
            fields = _subscription_fields(obj)
        return BillingEventSnapshot(
            event_kind=kind,
            event_id=dig(event, "id"),
            version=int(created),
            **fields,
        )
    except pydantic.ValidationError as e:
        logger.warning("Malformed Stripe event", extra={
            "event_id": dig(event, "id"),
            "event_type": event_type,
            "errors": e.errors(),
        })
        raise ValidationError(f"Malformed Stripe event {dig(event, 'id')}: {e}")
