"""
Usage meter for metered features.

Pure functions compute over a Subscription value and return a new
UsageLedger; UsageMeter persists a ledger under a row lock with the
row_version optimistic check.

Rollover is lazy: counters are zeroed on the first access after a period
boundary, never by a scheduler.

Rollover rule:
- current_period_end defined, now past it, last reset before it -> reset
- last reset before current_period_start (a renewal was reconciled) -> reset
- no period at all (free plan) -> reset every FREE_USAGE_WINDOW_DAYS,
  measured from the last reset
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from langlearn.config.settings import (
    get_free_usage_window_days,
    get_usage_conflict_max_retries,
)
from langlearn.models.base import utcnow
from langlearn.models.subscription import Plan, Subscription
from langlearn.repositories.subscription_repository import SubscriptionRepository
from langlearn.services.billing_errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from langlearn.services.entitlement_policy import (
    METERED_FEATURES,
    UNLIMITED,
    is_unlimited,
    limit_for,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageLedger:
    """Snapshot of a subscription's usage counters."""
    current_period: Dict[str, int] = field(default_factory=dict)
    lifetime: Dict[str, int] = field(default_factory=dict)
    last_reset: Optional[datetime] = None

    def used(self, feature: str) -> int:
        return int(self.current_period.get(feature, 0))

    def used_lifetime(self, feature: str) -> int:
        return int(self.lifetime.get(feature, 0))


def ledger_of(subscription: Subscription) -> UsageLedger:
    """Copy the counters off a subscription record."""
    return UsageLedger(
        current_period=dict(subscription.usage_current_period or {}),
        lifetime=dict(subscription.usage_lifetime or {}),
        last_reset=subscription.usage_last_reset,
    )


def write_ledger(subscription: Subscription, ledger: UsageLedger) -> None:
    """
    Store a ledger back on a subscription record.

    New dict objects are assigned so the JSON columns are flagged dirty.
    """
    subscription.usage_current_period = dict(ledger.current_period)
    subscription.usage_lifetime = dict(ledger.lifetime)
    subscription.usage_last_reset = ledger.last_reset


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError(f"Usage amount must be a positive integer, got {amount!r}")
    return amount


def _plan_for(subscription: Subscription, plan: Union[Plan, str, None]) -> Union[Plan, str]:
    return plan if plan is not None else subscription.plan


# ---------------------------------------------------------------------------
# Pure operations
# ---------------------------------------------------------------------------

def rollover_due(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """
    Check whether the period counters must be zeroed before use.

    A billing period that ended and was already reset past counts as no
    period: the record falls back to the free window from its last reset.
    """
    now = now or utcnow()
    last_reset = subscription.usage_last_reset
    if last_reset is None:
        return True

    period_start = subscription.current_period_start
    period_end = subscription.current_period_end
    lapsed = period_end is not None and now > period_end

    if lapsed and last_reset < period_end:
        return True
    if period_start is not None and last_reset < period_start <= now:
        return True
    if lapsed or (period_start is None and period_end is None):
        window = timedelta(days=get_free_usage_window_days())
        return now - last_reset >= window
    return False


def rollover_if_due(subscription: Subscription, now: Optional[datetime] = None) -> UsageLedger:
    """
    Get the subscription's ledger with the period counters zeroed if due.

    Idempotent: once reset, last_reset is `now`, so a second call in the
    same period returns the ledger unchanged. Lifetime counters are kept.
    """
    now = now or utcnow()
    ledger = ledger_of(subscription)
    if not rollover_due(subscription, now):
        return ledger
    return UsageLedger(current_period={}, lifetime=ledger.lifetime, last_reset=now)


class _SubscriptionView:
    """Read-through proxy so pure functions never mutate the record."""

    def __init__(self, subscription: Subscription):
        self._subscription = subscription

    def __getattr__(self, name: str):
        return getattr(self._subscription, name)


def _with_ledger(subscription: Subscription, ledger: UsageLedger) -> Subscription:
    """Lightweight view of a subscription with substituted counters."""
    view = _SubscriptionView(subscription)
    view.usage_current_period = ledger.current_period
    view.usage_lifetime = ledger.lifetime
    view.usage_last_reset = ledger.last_reset
    return view


def can_use(
    subscription: Subscription,
    feature: str,
    amount: int = 1,
    now: Optional[datetime] = None,
    plan: Union[Plan, str, None] = None,
) -> bool:
    """
    Check whether `amount` more units of a metered feature fit in the quota.

    Rolls over first. An unlimited limit always allows.

    Args:
        subscription: Subscription value (not mutated)
        feature: Metered feature key
        amount: Units requested (positive integer)
        now: Evaluation time, defaults to the current UTC time
        plan: Plan whose limits apply, defaults to the record's plan
    """
    amount = _validate_amount(amount)
    ledger = rollover_if_due(subscription, now)
    limit = limit_for(_plan_for(subscription, plan), feature)
    if is_unlimited(limit):
        return True
    return ledger.used(feature) + amount <= limit


def record_usage(ledger: UsageLedger, feature: str, amount: int = 1) -> UsageLedger:
    """
    Get a new ledger with `amount` added to the period and lifetime counters.

    Only valid after can_use returned True for the same amount; the atomic
    UsageMeter.record_usage enforces that pairing.
    """
    amount = _validate_amount(amount)
    current = dict(ledger.current_period)
    lifetime = dict(ledger.lifetime)
    current[feature] = int(current.get(feature, 0)) + amount
    lifetime[feature] = int(lifetime.get(feature, 0)) + amount
    return UsageLedger(current_period=current, lifetime=lifetime, last_reset=ledger.last_reset)


def remaining(
    subscription: Subscription,
    feature: str,
    now: Optional[datetime] = None,
    plan: Union[Plan, str, None] = None,
) -> int:
    """
    Get the units left in the current period.

    Returns:
        UNLIMITED (-1) if unlimited, else max(0, limit - used)
    """
    ledger = rollover_if_due(subscription, now)
    limit = limit_for(_plan_for(subscription, plan), feature)
    if is_unlimited(limit):
        return UNLIMITED
    return max(0, limit - ledger.used(feature))


def next_reset_at(subscription: Subscription, now: Optional[datetime] = None) -> Optional[datetime]:
    """Get when the period counters will next roll over."""
    now = now or utcnow()
    if subscription.current_period_end is not None:
        return subscription.current_period_end
    if subscription.current_period_start is not None:
        return None
    ledger = rollover_if_due(subscription, now)
    return ledger.last_reset + timedelta(days=get_free_usage_window_days())


def usage_summary(
    subscription: Subscription,
    now: Optional[datetime] = None,
    plan: Union[Plan, str, None] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    Per-feature usage for display.

    Returns:
        {feature: {used, limit, remaining, unlimited, lifetime, resets_at}}
    """
    now = now or utcnow()
    ledger = rollover_if_due(subscription, now)
    view = _with_ledger(subscription, ledger)
    resets_at = next_reset_at(view, now)
    effective_plan = _plan_for(subscription, plan)

    summary = {}
    for feature in sorted(METERED_FEATURES):
        limit = limit_for(effective_plan, feature)
        summary[feature] = {
            "used": ledger.used(feature),
            "limit": limit,
            "remaining": remaining(view, feature, now, effective_plan),
            "unlimited": is_unlimited(limit),
            "lifetime": ledger.used_lifetime(feature),
            "resets_at": resets_at.isoformat() if resets_at else None,
        }
    return summary


# ---------------------------------------------------------------------------
# Atomic persistence
# ---------------------------------------------------------------------------

class UsageMeter:
    """
    Atomic check-and-increment against one subscription row.

    Every call locks the row, re-reads it, rolls over, re-checks the quota
    and increments in a single transaction. A concurrent writer that slips
    in between read and write bumps row_version, the flush raises
    StaleDataError and the whole unit is retried on a fresh read.
    """

    def __init__(self, db_session: Session, max_retries: Optional[int] = None):
        self.db = db_session
        self.repo = SubscriptionRepository(db_session)
        if max_retries is None:
            max_retries = get_usage_conflict_max_retries()
        self.max_retries = max_retries

    def _locked(self, user_id: str) -> Subscription:
        subscription = self.repo.get_for_update(user_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for user {user_id}")
        return subscription

    def record_usage(
        self,
        user_id: str,
        feature: str,
        amount: int = 1,
        plan_resolver=None,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, Subscription]:
        """
        Atomically check the quota and record usage if it fits.

        Args:
            user_id: Owning account ID
            feature: Metered feature key
            amount: Units to record
            plan_resolver: Callable(subscription) -> Plan used for limits,
                defaults to the record's plan
            now: Evaluation time

        Returns:
            (allowed, subscription) - on denial nothing but a due rollover
            is persisted

        Raises:
            NotFoundError: If the user has no subscription
            ConflictError: If the retry budget is exhausted
        """
        amount = _validate_amount(amount)

        for attempt in range(1, self.max_retries + 2):
            subscription = self._locked(user_id)
            at = now or utcnow()
            plan = plan_resolver(subscription) if plan_resolver else subscription.plan

            ledger = rollover_if_due(subscription, at)
            rolled = ledger.last_reset != subscription.usage_last_reset
            allowed = can_use(_with_ledger(subscription, ledger), feature, amount, at, plan)

            if allowed:
                ledger = record_usage(ledger, feature, amount)
            if allowed or rolled:
                write_ledger(subscription, ledger)

            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.info("Usage update conflict, retrying", extra={
                    "user_id": user_id,
                    "feature": feature,
                    "attempt": attempt,
                })
                continue

            if not allowed:
                logger.info("Usage denied, quota exhausted", extra={
                    "user_id": user_id,
                    "feature": feature,
                    "used": ledger.used(feature),
                })
            return allowed, subscription

        logger.warning("Usage update conflict retries exhausted", extra={
            "user_id": user_id,
            "feature": feature,
            "max_retries": self.max_retries,
        })
        raise ConflictError(f"Concurrent usage update for user {user_id}")

    def rollover(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """
        Persist a due rollover for a user's subscription.

        Raises:
            NotFoundError: If the user has no subscription
            ConflictError: On a concurrent update
        """
        subscription = self._locked(user_id)
        at = now or utcnow()
        if not rollover_due(subscription, at):
            self.db.rollback()
            return subscription

        write_ledger(subscription, rollover_if_due(subscription, at))
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError(f"Concurrent usage rollover for user {user_id}")

        logger.info("Usage counters rolled over", extra={"user_id": user_id})
        return subscription
