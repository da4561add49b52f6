"""
Tests for usage metering: rollover, quota checks and atomic recording.
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from langlearn.models.subscription import Plan, SubscriptionStatus
from langlearn.services.billing_errors import ConflictError, NotFoundError, ValidationError
from langlearn.services.entitlement_policy import UNLIMITED, MeteredFeature
from langlearn.services.subscription_state import build_free_subscription
from langlearn.services.usage_meter import (
    UsageLedger,
    UsageMeter,
    can_use,
    ledger_of,
    record_usage,
    remaining,
    rollover_due,
    rollover_if_due,
    usage_summary,
    write_ledger,
)
from langlearn.tests.conftest import NOW, paid_period

AI = MeteredFeature.AI_CHAT_MESSAGES
LESSONS = MeteredFeature.LESSONS_COMPLETED


def _sub(plan=Plan.FREE, used=None, last_reset=NOW, period=None):
    sub = build_free_subscription("user-1", last_reset)
    sub.plan = plan.value
    if period:
        sub.current_period_start, sub.current_period_end = period
    if used:
        sub.usage_current_period = dict(used)
        sub.usage_lifetime = dict(used)
    return sub


class TestCanUse:

    def test_limit_exhausted_denies(self):
        sub = _sub()
        ledger = record_usage(ledger_of(sub), LESSONS, 3)
        write_ledger(sub, ledger)

        assert can_use(sub, LESSONS, 1, now=NOW) is False

    def test_exact_fit_allowed(self):
        sub = _sub(used={AI: 9})

        assert can_use(sub, AI, 1, now=NOW) is True
        assert can_use(sub, AI, 2, now=NOW) is False

    def test_unlimited_ignores_prior_usage(self):
        sub = _sub(plan=Plan.PRO, used={AI: 10_000_000}, period=paid_period())

        assert can_use(sub, AI, 1, now=NOW) is True
        assert can_use(sub, AI, 500, now=NOW) is True

    def test_absent_feature_is_denied(self):
        sub = _sub(plan=Plan.PRO, period=paid_period())

        assert can_use(sub, "video_calls", 1, now=NOW) is False

    def test_plan_override(self):
        sub = _sub(plan=Plan.PREMIUM, used={AI: 50}, period=paid_period())

        assert can_use(sub, AI, 1, now=NOW) is True
        assert can_use(sub, AI, 1, now=NOW, plan=Plan.FREE) is False

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5, "1"])
    def test_invalid_amount_rejected(self, amount):
        with pytest.raises(ValidationError):
            can_use(_sub(), AI, amount, now=NOW)

    def test_does_not_mutate_subscription(self):
        # previous period ended five days ago, counters never reset
        end = NOW - timedelta(days=5)
        last_reset = end - timedelta(days=31)
        sub = _sub(plan=Plan.PREMIUM, used={AI: 100},
                   last_reset=last_reset, period=(end - timedelta(days=30), end))

        assert can_use(sub, AI, 1, now=NOW) is True
        assert sub.usage_current_period == {AI: 100}
        assert sub.usage_last_reset == last_reset


class TestRollover:

    def test_period_end_passed_zeroes_counters_before_check(self):
        start, end = NOW - timedelta(days=40), NOW - timedelta(days=10)
        sub = _sub(plan=Plan.PREMIUM, used={AI: 100}, last_reset=start, period=(start, end))

        assert can_use(sub, AI, 1, now=NOW) is True
        ledger = rollover_if_due(sub, NOW)
        assert ledger.current_period == {}
        assert ledger.lifetime == {AI: 100}
        assert ledger.last_reset == NOW

    def test_rollover_is_idempotent(self):
        start, end = NOW - timedelta(days=40), NOW - timedelta(days=10)
        sub = _sub(plan=Plan.PREMIUM, used={AI: 100}, last_reset=start, period=(start, end))

        write_ledger(sub, rollover_if_due(sub, NOW))
        write_ledger(sub, record_usage(ledger_of(sub), AI, 4))
        later = NOW + timedelta(hours=1)

        assert rollover_due(sub, later) is False
        assert rollover_if_due(sub, later).used(AI) == 4

    def test_renewal_reconciled_resets_counters(self):
        # last reset predates the new period start
        start, end = paid_period(days_in=2)
        sub = _sub(plan=Plan.PREMIUM, used={AI: 100}, last_reset=start - timedelta(days=3),
                   period=(start, end))

        assert rollover_due(sub, NOW) is True
        assert remaining(sub, AI, now=NOW) == 100

    def test_within_period_no_reset(self):
        start, end = paid_period()
        sub = _sub(plan=Plan.PREMIUM, used={AI: 40}, last_reset=start, period=(start, end))

        assert rollover_due(sub, NOW) is False
        assert remaining(sub, AI, now=NOW) == 60

    def test_future_period_start_does_not_reset_repeatedly(self):
        start = NOW + timedelta(days=1)
        sub = _sub(plan=Plan.PREMIUM, used={AI: 5}, last_reset=NOW - timedelta(days=1),
                   period=(start, start + timedelta(days=30)))

        assert rollover_due(sub, NOW) is False

    def test_lapsed_period_already_reset_uses_free_window(self):
        start, end = NOW - timedelta(days=70), NOW - timedelta(days=40)
        sub = _sub(used={AI: 10}, last_reset=end + timedelta(days=1), period=(start, end))

        assert rollover_due(sub, NOW) is True
        assert can_use(sub, AI, 1, now=NOW) is True

    def test_lapsed_period_recent_reset_waits_for_window(self):
        start, end = NOW - timedelta(days=40), NOW - timedelta(days=10)
        sub = _sub(used={AI: 10}, last_reset=end + timedelta(days=1), period=(start, end))

        assert rollover_due(sub, NOW) is False
        assert can_use(sub, AI, 1, now=NOW) is False

    def test_free_window_elapsed_resets(self):
        sub = _sub(used={AI: 10}, last_reset=NOW - timedelta(days=30))

        assert rollover_due(sub, NOW) is True
        assert can_use(sub, AI, 1, now=NOW) is True

    def test_free_window_not_elapsed(self):
        sub = _sub(used={AI: 10}, last_reset=NOW - timedelta(days=29))

        assert rollover_due(sub, NOW) is False
        assert can_use(sub, AI, 1, now=NOW) is False

    def test_free_window_is_configurable(self, monkeypatch):
        monkeypatch.setenv("FREE_USAGE_WINDOW_DAYS", "7")
        sub = _sub(used={AI: 10}, last_reset=NOW - timedelta(days=8))

        assert rollover_due(sub, NOW) is True


class TestRecordUsage:

    def test_increments_period_and_lifetime(self):
        ledger = UsageLedger(current_period={AI: 2}, lifetime={AI: 50}, last_reset=NOW)

        updated = record_usage(ledger, AI, 3)

        assert updated.used(AI) == 5
        assert updated.used_lifetime(AI) == 53
        assert updated.last_reset == NOW

    def test_original_ledger_untouched(self):
        ledger = UsageLedger(current_period={}, lifetime={}, last_reset=NOW)

        record_usage(ledger, LESSONS, 1)

        assert ledger.current_period == {}
        assert ledger.lifetime == {}

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValidationError):
            record_usage(UsageLedger(last_reset=NOW), AI, 0)


class TestRemainingAndSummary:

    def test_remaining_never_negative(self):
        sub = _sub(used={AI: 25})

        assert remaining(sub, AI, now=NOW) == 0

    def test_remaining_unlimited(self):
        sub = _sub(plan=Plan.PRO, period=paid_period())

        assert remaining(sub, AI, now=NOW) == UNLIMITED

    def test_summary_for_free_plan(self):
        sub = _sub(used={AI: 4, LESSONS: 1})

        summary = usage_summary(sub, now=NOW)

        assert summary[AI]["used"] == 4
        assert summary[AI]["limit"] == 10
        assert summary[AI]["remaining"] == 6
        assert summary[AI]["unlimited"] is False
        assert summary[LESSONS]["remaining"] == 2
        assert summary[AI]["resets_at"] == (NOW + timedelta(days=30)).isoformat()

    def test_summary_after_rollover_uses_period_end(self):
        start, end = paid_period()
        sub = _sub(plan=Plan.PRO, used={AI: 7}, last_reset=start, period=(start, end))

        summary = usage_summary(sub, now=NOW)

        assert summary[AI]["unlimited"] is True
        assert summary[AI]["remaining"] == UNLIMITED
        assert summary[AI]["lifetime"] == 7
        assert summary[AI]["resets_at"] == end.isoformat()


class TestUsageMeter:

    def test_free_plan_ten_ai_messages(self, db_session, make_subscription):
        make_subscription("user-1")
        meter = UsageMeter(db_session)

        for _ in range(10):
            allowed, _ = meter.record_usage("user-1", AI, 1, now=NOW)
            assert allowed is True

        allowed, sub = meter.record_usage("user-1", AI, 1, now=NOW)

        assert allowed is False
        assert can_use(sub, AI, 1, now=NOW) is False
        assert remaining(sub, AI, now=NOW) == 0
        assert sub.usage_current_period[AI] == 10
        assert sub.usage_lifetime[AI] == 10

    def test_denial_persists_nothing(self, db_session, make_subscription):
        make_subscription("user-1", usage_current_period={LESSONS: 3},
                          usage_lifetime={LESSONS: 3})
        meter = UsageMeter(db_session)

        allowed, sub = meter.record_usage("user-1", LESSONS, 1, now=NOW)

        assert allowed is False
        assert sub.usage_current_period == {LESSONS: 3}
        assert sub.usage_lifetime == {LESSONS: 3}

    def test_rollover_is_persisted_with_the_increment(self, db_session, make_subscription):
        start, end = NOW - timedelta(days=40), NOW - timedelta(days=10)
        make_subscription(
            "user-1", now=start, plan=Plan.PREMIUM,
            current_period_start=start, current_period_end=end,
            usage_current_period={AI: 100}, usage_lifetime={AI: 100},
        )

        allowed, sub = UsageMeter(db_session).record_usage("user-1", AI, 2, now=NOW)

        assert allowed is True
        db_session.expire_all()
        assert sub.usage_current_period == {AI: 2}
        assert sub.usage_lifetime == {AI: 102}
        assert sub.usage_last_reset == NOW

    def test_plan_resolver_controls_limits(self, db_session, make_subscription):
        make_subscription("user-1", plan=Plan.PRO, status=SubscriptionStatus.PAST_DUE,
                          usage_current_period={AI: 10})

        allowed, _ = UsageMeter(db_session).record_usage(
            "user-1", AI, 1, plan_resolver=lambda s: Plan.FREE, now=NOW
        )

        assert allowed is False

    def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            UsageMeter(db_session).record_usage("ghost", AI, 1)

    def test_invalid_amount(self, db_session, make_subscription):
        make_subscription("user-1")

        with pytest.raises(ValidationError):
            UsageMeter(db_session).record_usage("user-1", AI, 0)

    def test_conflict_is_retried(self, db_session, make_subscription, monkeypatch):
        make_subscription("user-1")
        meter = UsageMeter(db_session, max_retries=3)
        real_commit = db_session.commit
        calls = {"n": 0}

        def flaky_commit():
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("row_version mismatch")
            real_commit()

        monkeypatch.setattr(db_session, "commit", flaky_commit)

        allowed, sub = meter.record_usage("user-1", AI, 1, now=NOW)

        assert allowed is True
        assert calls["n"] == 2
        assert sub.usage_current_period == {AI: 1}

    def test_conflict_retries_exhausted(self, db_session, make_subscription, monkeypatch):
        make_subscription("user-1")
        meter = UsageMeter(db_session, max_retries=2)

        def always_stale():
            raise StaleDataError("row_version mismatch")

        monkeypatch.setattr(db_session, "commit", always_stale)

        with pytest.raises(ConflictError):
            meter.record_usage("user-1", AI, 1, now=NOW)

    def test_zero_retries_means_single_attempt(self, db_session, make_subscription, monkeypatch):
        make_subscription("user-1")
        meter = UsageMeter(db_session, max_retries=0)
        calls = {"n": 0}

        def always_stale():
            calls["n"] += 1
            raise StaleDataError("row_version mismatch")

        monkeypatch.setattr(db_session, "commit", always_stale)

        assert meter.max_retries == 0
        with pytest.raises(ConflictError):
            meter.record_usage("user-1", AI, 1, now=NOW)
        assert calls["n"] == 1

    def test_rollover_persists_when_due(self, db_session, make_subscription):
        make_subscription("user-1", now=NOW - timedelta(days=31),
                          usage_current_period={AI: 10}, usage_lifetime={AI: 10})

        sub = UsageMeter(db_session).rollover("user-1", now=NOW)

        assert sub.usage_current_period == {}
        assert sub.usage_lifetime == {AI: 10}
        assert sub.usage_last_reset == NOW

    def test_rollover_noop_when_not_due(self, db_session, make_subscription):
        make_subscription("user-1", usage_current_period={AI: 3}, usage_lifetime={AI: 3})

        sub = UsageMeter(db_session).rollover("user-1", now=NOW + timedelta(days=1))

        assert sub.usage_current_period == {AI: 3}
        assert sub.usage_last_reset == NOW
