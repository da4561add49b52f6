"""
Tests for the subscription state machine and derived predicates.
"""

from datetime import timedelta

import pytest

from langlearn.models.subscription import Plan, SubscriptionStatus
from langlearn.services.billing_errors import StaleEventError
from langlearn.services.subscription_state import (
    apply_provider_status,
    build_free_subscription,
    can_transition,
    days_until_expiry,
    entitlement_plan,
    is_active,
    is_expired,
    is_premium_eligible,
    is_terminal,
    mark_canceled,
    set_cancel_at_period_end,
)
from langlearn.tests.conftest import NOW, paid_period


def _sub(plan=Plan.FREE, status=SubscriptionStatus.ACTIVE, period=None):
    sub = build_free_subscription("user-1", NOW)
    sub.plan = plan.value
    sub.status = status.value
    if period:
        sub.current_period_start, sub.current_period_end = period
    return sub


class TestBuildFreeSubscription:

    def test_registration_defaults(self):
        sub = build_free_subscription("user-1", NOW)

        assert sub.plan == Plan.FREE.value
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.external_customer_ref is None
        assert sub.external_subscription_ref is None
        assert sub.cancel_at_period_end is False
        assert sub.usage_current_period == {}
        assert sub.usage_lifetime == {}
        assert sub.usage_last_reset == NOW
        assert sub.last_event_version is None

    def test_requires_user_id(self):
        with pytest.raises(ValueError):
            build_free_subscription("")


class TestPredicates:

    @pytest.mark.parametrize("status,expected", [
        (SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.TRIALING, True),
        (SubscriptionStatus.PAST_DUE, False),
        (SubscriptionStatus.UNPAID, False),
        (SubscriptionStatus.PAUSED, False),
        (SubscriptionStatus.INCOMPLETE, False),
        (SubscriptionStatus.CANCELED, False),
        (SubscriptionStatus.INCOMPLETE_EXPIRED, False),
    ])
    def test_is_active_uses_status_only(self, status, expected):
        assert is_active(_sub(status=status)) is expected

    def test_expired_period_does_not_deactivate(self):
        sub = _sub(plan=Plan.PREMIUM,
                   period=(NOW - timedelta(days=40), NOW - timedelta(days=10)))

        assert is_expired(sub, NOW) is True
        assert is_active(sub) is True
        assert is_premium_eligible(sub) is True

    def test_free_plan_is_not_premium(self):
        assert is_premium_eligible(_sub()) is False

    def test_past_due_paid_plan_is_not_premium(self):
        assert is_premium_eligible(_sub(Plan.PRO, SubscriptionStatus.PAST_DUE)) is False

    def test_no_period_never_expires(self):
        sub = _sub()

        assert is_expired(sub, NOW) is False
        assert days_until_expiry(sub, NOW) is None

    def test_days_until_expiry_rounds_up(self):
        sub = _sub(Plan.PREMIUM, period=(NOW - timedelta(days=20),
                                         NOW + timedelta(days=2, hours=1)))

        assert days_until_expiry(sub, NOW) == 3

    def test_days_until_expiry_negative_after_end(self):
        sub = _sub(Plan.PREMIUM, period=(NOW - timedelta(days=32), NOW - timedelta(days=2)))

        assert days_until_expiry(sub, NOW) == -2


class TestEntitlementPlan:

    def test_active_paid_plan_applies(self):
        assert entitlement_plan(_sub(Plan.PRO)) == Plan.PRO

    def test_trialing_paid_plan_applies(self):
        assert entitlement_plan(_sub(Plan.PREMIUM, SubscriptionStatus.TRIALING)) == Plan.PREMIUM

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.INCOMPLETE,
    ])
    def test_inactive_paid_plan_falls_back_to_free(self, status):
        assert entitlement_plan(_sub(Plan.PRO, status)) == Plan.FREE


class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        (SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED),
        (SubscriptionStatus.PAUSED, SubscriptionStatus.ACTIVE),
    ])
    def test_valid(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.INCOMPLETE_EXPIRED, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.INCOMPLETE),
    ])
    def test_invalid(self, current, new):
        assert not can_transition(current, new)

    def test_terminal_refuses_revival(self):
        sub = _sub(Plan.FREE, SubscriptionStatus.CANCELED)

        assert is_terminal(sub)
        with pytest.raises(StaleEventError):
            apply_provider_status(sub, SubscriptionStatus.ACTIVE)
        assert sub.status == SubscriptionStatus.CANCELED.value

    def test_terminal_same_status_is_idempotent(self):
        sub = _sub(Plan.FREE, SubscriptionStatus.CANCELED)

        apply_provider_status(sub, SubscriptionStatus.CANCELED)

        assert sub.status == SubscriptionStatus.CANCELED.value

    def test_new_ref_accepts_any_status(self):
        sub = _sub(Plan.FREE, SubscriptionStatus.CANCELED)

        apply_provider_status(sub, SubscriptionStatus.TRIALING, adopting_new_ref=True)

        assert sub.status == SubscriptionStatus.TRIALING.value

    def test_off_table_transition_is_applied(self, caplog):
        sub = _sub(Plan.PREMIUM, SubscriptionStatus.ACTIVE)

        apply_provider_status(sub, SubscriptionStatus.INCOMPLETE)

        assert sub.status == SubscriptionStatus.INCOMPLETE.value
        assert "Off-table subscription transition" in caplog.text


class TestCancellation:

    def test_mark_canceled_drops_to_free(self):
        sub = _sub(Plan.PRO, period=paid_period())

        mark_canceled(sub, NOW)

        assert sub.status == SubscriptionStatus.CANCELED.value
        assert sub.plan == Plan.FREE.value
        assert sub.canceled_at == NOW
        assert entitlement_plan(sub) == Plan.FREE

    def test_cancel_at_period_end_keeps_status(self):
        sub = _sub(Plan.PREMIUM, period=paid_period())

        set_cancel_at_period_end(sub, True)

        assert sub.cancel_at_period_end is True
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert entitlement_plan(sub) == Plan.PREMIUM
