"""
Subscription state machine.

Holds the billing status transitions and the derived access predicates.

CRITICAL:
- status in {active, trialing} is the ONLY source of "is active"; period
  dates never override it
- canceled / incomplete_expired are terminal for a provider subscription ref;
  re-subscribing creates a new ref
- cancel_at_period_end is an independent flag and never changes status
"""

import logging
import math
from datetime import datetime
from typing import Optional

from langlearn.models.base import utcnow
from langlearn.models.subscription import Plan, Subscription, SubscriptionStatus
from langlearn.services.billing_errors import StaleEventError

logger = logging.getLogger(__name__)


ACTIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})

TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
})

# Valid provider-driven transitions for a single subscription ref
VALID_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE.value: frozenset({
        SubscriptionStatus.INCOMPLETE.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.INCOMPLETE_EXPIRED.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.TRIALING.value: frozenset({
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.PAUSED.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.ACTIVE.value: frozenset({
        SubscriptionStatus.ACTIVE.value,  # Renewal / plan change
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.PAUSED.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.PAST_DUE.value: frozenset({
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.ACTIVE.value,  # Payment resolved
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.UNPAID.value: frozenset({
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.PAUSED.value: frozenset({
        SubscriptionStatus.PAUSED.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.CANCELED.value,
    }),
    SubscriptionStatus.CANCELED.value: frozenset(),
    SubscriptionStatus.INCOMPLETE_EXPIRED.value: frozenset(),
}


def _status_value(status) -> str:
    return status.value if isinstance(status, SubscriptionStatus) else str(status)


def build_free_subscription(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Build the registration-time subscription: free plan, active, unlinked.

    Every field is set explicitly so the object is usable before it is
    flushed to the database.
    """
    if not user_id:
        raise ValueError("user_id is required")
    now = now or utcnow()
    return Subscription(
        user_id=user_id,
        external_customer_ref=None,
        external_subscription_ref=None,
        price_ref=None,
        plan=Plan.FREE.value,
        status=SubscriptionStatus.ACTIVE.value,
        billing_cycle=None,
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end=False,
        trial_start=None,
        trial_end=None,
        canceled_at=None,
        usage_current_period={},
        usage_lifetime={},
        usage_last_reset=now,
        discount=None,
        last_event_version=None,
    )


# ---------------------------------------------------------------------------
# Derived predicates
# ---------------------------------------------------------------------------

def is_active(subscription) -> bool:
    """Check if subscription is active (active or trialing)."""
    return _status_value(subscription.status) in ACTIVE_STATUSES


def is_premium_eligible(subscription) -> bool:
    """Check if subscription currently grants a paid plan."""
    return is_active(subscription) and _status_value(subscription.plan) != Plan.FREE.value


def is_expired(subscription, now: Optional[datetime] = None) -> bool:
    """
    Check if the billing period has ended.

    Informational only - never used to override status.
    """
    if not subscription.current_period_end:
        return False
    return (now or utcnow()) > subscription.current_period_end


def days_until_expiry(subscription, now: Optional[datetime] = None) -> Optional[int]:
    """Get whole days (rounded up) until the current period ends."""
    if not subscription.current_period_end:
        return None
    delta = subscription.current_period_end - (now or utcnow())
    return math.ceil(delta.total_seconds() / 86400)


def entitlement_plan(subscription) -> Plan:
    """
    Get the plan whose entitlements apply right now.

    A paid plan only counts while the subscription is active; any other
    status falls back to the free tier.
    """
    if not is_active(subscription):
        return Plan.FREE
    return Plan(_status_value(subscription.plan))


def is_terminal(subscription) -> bool:
    return _status_value(subscription.status) in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def can_transition(current_status, new_status) -> bool:
    """
    Check if a provider-driven state transition is on the table.

    Args:
        current_status: Current subscription status
        new_status: Proposed new status
    """
    valid_targets = VALID_TRANSITIONS.get(_status_value(current_status), frozenset())
    return _status_value(new_status) in valid_targets


def apply_provider_status(
    subscription: Subscription,
    new_status: SubscriptionStatus,
    adopting_new_ref: bool = False,
) -> None:
    """
    Set the provider's canonical status on a subscription.

    When adopting a new provider ref (first paid subscription, or
    re-subscribe after a terminal state) any status is accepted.

    Raises:
        StaleEventError: If the subscription is terminal for its current ref
    """
    new_value = _status_value(new_status)
    old_value = _status_value(subscription.status)

    if not adopting_new_ref:
        if old_value in TERMINAL_STATUSES and new_value != old_value:
            raise StaleEventError(
                f"Subscription {subscription.external_subscription_ref} is {old_value}; "
                f"refusing transition to {new_value}"
            )
        if not can_transition(old_value, new_value):
            # Log but still apply (provider is source of truth)
            logger.warning("Off-table subscription transition", extra={
                "user_id": subscription.user_id,
                "from_status": old_value,
                "to_status": new_value,
                "subscription_ref": subscription.external_subscription_ref,
            })

    subscription.status = new_value


def mark_canceled(subscription: Subscription, canceled_at: Optional[datetime] = None) -> None:
    """Retire a subscription from paid billing: canceled, back on free."""
    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.plan = Plan.FREE.value
    subscription.canceled_at = canceled_at or utcnow()


def set_cancel_at_period_end(subscription: Subscription, cancel_at_period_end: bool) -> None:
    """Mirror the user's cancellation intent. Never touches status."""
    subscription.cancel_at_period_end = bool(cancel_at_period_end)
