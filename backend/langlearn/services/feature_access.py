"""
Feature access gate.

The single entry point request handlers use before a gated action:

    gate = FeatureAccessGate(db_session)
    decision = gate.check(user_id, MeteredFeature.AI_CHAT_MESSAGES)
    if not decision.allowed:
        return denial(decision)
    ...perform the action...
    decision = gate.record(user_id, MeteredFeature.AI_CHAT_MESSAGES)

A denial is a normal return value (EntitlementDenied), never an exception.
check() never mutates state; record() re-checks under the row lock so
check-and-increment is indivisible.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from langlearn.models.subscription import Plan, Subscription
from langlearn.repositories.subscription_repository import SubscriptionRepository
from langlearn.services.billing_errors import NotFoundError, ValidationError
from langlearn.services.entitlement_policy import (
    BOOLEAN_FEATURES,
    METERED_FEATURES,
    has_boolean_feature,
    limit_for,
    required_plan_for,
)
from langlearn.services.subscription_state import entitlement_plan
from langlearn.services.usage_meter import UsageMeter, can_use, remaining

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotEntitled:
    """The plan does not include the feature at all."""
    required_plan: Optional[Plan]
    code = "not_entitled"


@dataclass(frozen=True)
class LimitExceeded:
    """The plan includes the feature but the period quota is used up."""
    remaining: int
    code = "limit_exceeded"


DenialReason = Union[NotEntitled, LimitExceeded]


@dataclass(frozen=True)
class Allow:
    feature: str
    plan: Plan
    remaining: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class EntitlementDenied:
    feature: str
    plan: Plan
    reason: DenialReason

    @property
    def allowed(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Structured body for a 403 response."""
        required = getattr(self.reason, "required_plan", None)
        return {
            "code": self.reason.code,
            "feature": self.feature,
            "plan": self.plan.value,
            "reason": self.reason.code,
            "remaining": getattr(self.reason, "remaining", 0),
            "required_plan": required.value if required else None,
        }


AccessDecision = Union[Allow, EntitlementDenied]


def _validate_feature(feature: str) -> None:
    if feature not in METERED_FEATURES and feature not in BOOLEAN_FEATURES:
        raise ValidationError(f"Unknown feature: {feature!r}")


def check_access(
    subscription: Subscription,
    feature: str,
    amount: int = 1,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """
    Decide whether a subscription may use a feature.

    Limits come from the plan that currently applies: a paid plan whose
    status is not active (e.g. past_due) is evaluated as free.

    Algorithm:
        boolean feature not granted -> NotEntitled(cheapest granting plan)
        metered limit is 0          -> NotEntitled(cheapest granting plan)
        quota would be exceeded     -> LimitExceeded(remaining)
        otherwise                   -> Allow
    """
    _validate_feature(feature)
    plan = entitlement_plan(subscription)

    if feature in BOOLEAN_FEATURES:
        if not has_boolean_feature(plan, feature):
            return EntitlementDenied(feature, plan, NotEntitled(required_plan_for(feature)))
        return Allow(feature, plan)

    if limit_for(plan, feature) == 0:
        return EntitlementDenied(feature, plan, NotEntitled(required_plan_for(feature)))

    if not can_use(subscription, feature, amount, now, plan):
        return EntitlementDenied(
            feature, plan, LimitExceeded(remaining(subscription, feature, now, plan))
        )
    return Allow(feature, plan, remaining(subscription, feature, now, plan))


class FeatureAccessGate:
    """DB-backed gate: loads the subscription, decides, records."""

    def __init__(self, db_session: Session, meter: Optional[UsageMeter] = None):
        self.db = db_session
        self.repo = SubscriptionRepository(db_session)
        self.meter = meter or UsageMeter(db_session)

    def _load(self, user_id: str) -> Subscription:
        subscription = self.repo.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for user {user_id}")
        return subscription

    def check(
        self,
        user_id: str,
        feature: str,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """Read-only access decision for a user."""
        decision = check_access(self._load(user_id), feature, amount, now)
        if not decision.allowed:
            logger.info("Feature access denied", extra={
                "user_id": user_id,
                "feature": feature,
                "reason": decision.reason.code,
            })
        return decision

    def record(
        self,
        user_id: str,
        feature: str,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """
        Record usage of a metered feature after the gated action ran.

        The quota is re-checked under the row lock; a caller that lost a
        race for the last unit gets a LimitExceeded denial and nothing is
        counted.
        """
        _validate_feature(feature)
        if feature in BOOLEAN_FEATURES:
            # Nothing to count for on/off capabilities
            return self.check(user_id, feature, amount, now)

        subscription = self._load(user_id)
        plan = entitlement_plan(subscription)
        if limit_for(plan, feature) == 0:
            return EntitlementDenied(feature, plan, NotEntitled(required_plan_for(feature)))

        allowed, subscription = self.meter.record_usage(
            user_id, feature, amount, plan_resolver=entitlement_plan, now=now
        )
        plan = entitlement_plan(subscription)
        left = remaining(subscription, feature, now, plan)
        if allowed:
            return Allow(feature, plan, left)

        return EntitlementDenied(feature, plan, LimitExceeded(left))
