"""
Billing event reconciler.

Applies verified billing provider snapshots to the local Subscription.

CRITICAL:
- Idempotent: every field is copied last-write-wins from the snapshot
- Order-tolerant: subscription events older than the last applied version
  are logged and dropped, never allowed to overwrite newer state
- Fail-safe: an unknown price resolves to the free plan
- All-or-nothing: an incomplete snapshot is rejected before any mutation
- Payment history is append-only and deduplicated on payment ID
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from langlearn.config.plan_catalog import PlanCatalog, get_plan_catalog
from langlearn.models.base import utcnow
from langlearn.models.payment_record import PaymentOutcome, PaymentRecord
from langlearn.models.subscription import Plan, Subscription, SubscriptionStatus
from langlearn.repositories.subscription_repository import SubscriptionRepository
from langlearn.schemas.billing_event import BillingEventSnapshot, EventKind
from langlearn.services.billing_errors import (
    ConflictError,
    IncompleteEventError,
    NotFoundError,
    StaleEventError,
    UnmappedPlanError,
    ValidationError,
)
from langlearn.services.subscription_state import (
    TERMINAL_STATUSES,
    apply_provider_status,
    is_terminal,
    mark_canceled,
)

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ReconciliationResult:
    """What happened to one snapshot."""
    outcome: ReconciliationOutcome
    subscription_id: Optional[str] = None
    event_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


class BillingEventReconciler:
    """
    Applies billing snapshots to subscriptions, one transaction per event.

    Usage:
        reconciler = BillingEventReconciler(db_session)
        result = reconciler.apply(snapshot)
    """

    def __init__(self, db_session: Session, catalog: Optional[PlanCatalog] = None):
        self.db = db_session
        self.repo = SubscriptionRepository(db_session)
        self.catalog = catalog or get_plan_catalog()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def apply(
        self,
        snapshot: BillingEventSnapshot,
        now: Optional[datetime] = None
    ) -> ReconciliationResult:
        """
        Apply one verified snapshot.

        Returns:
            ReconciliationResult (applied, skipped or duplicate)

        Raises:
            ValidationError: Snapshot carries no provider reference
            IncompleteEventError: Snapshot lacks fields needed for its kind
            NotFoundError: No subscription matches the references
            ConflictError: Concurrent update on the subscription row
        """
        self._validate(snapshot)
        subscription = self._locate(snapshot)
        now = now or utcnow()

        try:
            if snapshot.is_payment_event:
                result = self._apply_payment(subscription, snapshot)
            else:
                result = self._apply_subscription_event(subscription, snapshot, now)
            self.db.commit()
        except StaleEventError as e:
            self.db.rollback()
            logger.info("Discarding stale billing event", extra={
                "event_id": snapshot.event_id,
                "event_kind": snapshot.event_kind.value,
                "subscription_ref": snapshot.subscription_ref,
                "incoming_version": e.incoming_version,
                "applied_version": e.applied_version,
                "reason": str(e),
            })
            return ReconciliationResult(
                outcome=ReconciliationOutcome.SKIPPED,
                subscription_id=subscription.id,
                event_id=snapshot.event_id,
                reason=str(e),
            )
        except StaleDataError:
            self.db.rollback()
            raise ConflictError(
                f"Concurrent update while applying event {snapshot.event_id}"
            )
        except IntegrityError:
            self.db.rollback()
            if snapshot.is_payment_event:
                # Lost the race against a duplicate delivery of the same payment
                return self._duplicate(subscription, snapshot)
            raise ConflictError(
                f"Provider reference already linked elsewhere (event {snapshot.event_id})"
            )

        logger.info("Billing event reconciled", extra={
            "event_id": snapshot.event_id,
            "event_kind": snapshot.event_kind.value,
            "subscription_id": subscription.id,
            "outcome": result.outcome.value,
        })
        return result

    # ------------------------------------------------------------------
    # Validation and lookup
    # ------------------------------------------------------------------

    def _validate(self, snapshot: BillingEventSnapshot) -> None:
        if not snapshot.subscription_ref and not snapshot.customer_ref:
            raise ValidationError(
                f"Event {snapshot.event_id} carries no customer or subscription reference"
            )
        missing = snapshot.missing_fields()
        if missing:
            raise IncompleteEventError(
                f"Event {snapshot.event_id} ({snapshot.event_kind.value}) "
                f"is missing: {', '.join(missing)}"
            )

    def _locate(self, snapshot: BillingEventSnapshot) -> Subscription:
        subscription = None
        if snapshot.subscription_ref:
            subscription = self.repo.get_by_external_subscription_ref(
                snapshot.subscription_ref, for_update=True
            )
        if subscription is None and snapshot.customer_ref:
            subscription = self.repo.get_by_external_customer_ref(
                snapshot.customer_ref, for_update=True
            )
        if subscription is None:
            raise NotFoundError(
                f"No subscription for customer {snapshot.customer_ref} / "
                f"subscription {snapshot.subscription_ref}"
            )
        return subscription

    # ------------------------------------------------------------------
    # Subscription events
    # ------------------------------------------------------------------

    def _check_version(self, subscription: Subscription, snapshot: BillingEventSnapshot) -> None:
        applied = subscription.last_event_version
        if applied is not None and snapshot.version <= applied:
            raise StaleEventError(
                f"Event version {snapshot.version} is not newer than {applied}",
                incoming_version=snapshot.version,
                applied_version=applied,
            )

    def _adopts_new_ref(self, subscription: Subscription, snapshot: BillingEventSnapshot) -> bool:
        """
        Decide whether the snapshot's subscription ref replaces the record's.

        A new ref is taken on the first paid subscription and after the
        previous ref reached a terminal state (re-subscribe). An event for
        another ref while the current one is still live is dropped.
        """
        current_ref = subscription.external_subscription_ref
        if snapshot.subscription_ref == current_ref:
            return False
        if current_ref is None or is_terminal(subscription):
            return True
        raise StaleEventError(
            f"Event for subscription {snapshot.subscription_ref} but record is "
            f"linked to live subscription {current_ref}",
            incoming_version=snapshot.version,
            applied_version=subscription.last_event_version,
        )

    def _resolve_plan(self, snapshot: BillingEventSnapshot):
        """Map the snapshot's price to (plan, billing cycle), unknown -> free."""
        try:
            entry = self.catalog.entry_for_price(snapshot.price_ref)
        except UnmappedPlanError as e:
            logger.warning("Unmapped price in billing event, resolving to free plan", extra={
                "event_id": snapshot.event_id,
                "price_ref": e.price_ref,
                "subscription_ref": snapshot.subscription_ref,
            })
            return Plan.FREE, None
        return entry.plan, entry.interval

    def _apply_subscription_event(
        self,
        subscription: Subscription,
        snapshot: BillingEventSnapshot,
        now: datetime,
    ) -> ReconciliationResult:
        self._check_version(subscription, snapshot)
        adopting = self._adopts_new_ref(subscription, snapshot)

        if snapshot.event_kind == EventKind.SUBSCRIPTION_DELETED:
            self._apply_deleted(subscription, snapshot, now)
        else:
            self._apply_snapshot_fields(subscription, snapshot, adopting)

        if adopting:
            logger.info("Linking provider subscription", extra={
                "user_id": subscription.user_id,
                "previous_ref": subscription.external_subscription_ref,
                "subscription_ref": snapshot.subscription_ref,
            })
            subscription.external_subscription_ref = snapshot.subscription_ref
        if subscription.external_customer_ref is None and snapshot.customer_ref:
            subscription.external_customer_ref = snapshot.customer_ref

        subscription.last_event_version = snapshot.version
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            subscription_id=subscription.id,
            event_id=snapshot.event_id,
        )

    def _apply_deleted(
        self,
        subscription: Subscription,
        snapshot: BillingEventSnapshot,
        now: datetime,
    ) -> None:
        mark_canceled(subscription, snapshot.canceled_at or now)
        self._retire_to_free(subscription)
        if snapshot.cancel_at_period_end is not None:
            subscription.cancel_at_period_end = snapshot.cancel_at_period_end

    @staticmethod
    def _retire_to_free(subscription: Subscription) -> None:
        # Free has no billing period; counters fall back to the free window
        subscription.plan = Plan.FREE.value
        subscription.billing_cycle = None
        subscription.current_period_start = None
        subscription.current_period_end = None

    def _apply_snapshot_fields(
        self,
        subscription: Subscription,
        snapshot: BillingEventSnapshot,
        adopting: bool,
    ) -> None:
        apply_provider_status(subscription, snapshot.status, adopting_new_ref=adopting)
        terminal = snapshot.status.value in TERMINAL_STATUSES

        if snapshot.status == SubscriptionStatus.CANCELED:
            mark_canceled(subscription, snapshot.canceled_at or subscription.canceled_at)
        elif terminal:
            subscription.canceled_at = snapshot.canceled_at
        else:
            plan, interval = self._resolve_plan(snapshot)
            subscription.plan = plan.value
            cycle = interval or snapshot.billing_cycle
            subscription.billing_cycle = cycle.value if cycle and plan != Plan.FREE else None
            subscription.canceled_at = snapshot.canceled_at

        subscription.price_ref = snapshot.price_ref
        if terminal:
            self._retire_to_free(subscription)
        else:
            subscription.current_period_start = snapshot.current_period_start
            subscription.current_period_end = snapshot.current_period_end
        if snapshot.cancel_at_period_end is not None:
            subscription.cancel_at_period_end = snapshot.cancel_at_period_end
        subscription.trial_start = snapshot.trial_start
        subscription.trial_end = snapshot.trial_end
        if snapshot.discount is not None:
            subscription.discount = dict(snapshot.discount)

    # ------------------------------------------------------------------
    # Payment events
    # ------------------------------------------------------------------

    def _duplicate(
        self,
        subscription: Subscription,
        snapshot: BillingEventSnapshot,
    ) -> ReconciliationResult:
        logger.info("Duplicate payment event ignored", extra={
            "event_id": snapshot.event_id,
            "payment_id": snapshot.payment.payment_id,
            "subscription_id": subscription.id,
        })
        return ReconciliationResult(
            outcome=ReconciliationOutcome.DUPLICATE,
            subscription_id=subscription.id,
            event_id=snapshot.event_id,
            reason=f"payment {snapshot.payment.payment_id} already recorded",
        )

    def _apply_payment(
        self,
        subscription: Subscription,
        snapshot: BillingEventSnapshot,
    ) -> ReconciliationResult:
        payment = snapshot.payment
        if self.repo.payment_exists(subscription.id, payment.payment_id):
            return self._duplicate(subscription, snapshot)

        outcome = (
            PaymentOutcome.SUCCEEDED
            if snapshot.event_kind == EventKind.PAYMENT_SUCCEEDED
            else PaymentOutcome.FAILED
        )
        record = PaymentRecord(
            subscription_id=subscription.id,
            payment_id=payment.payment_id,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            outcome=outcome.value,
            paid_at=payment.paid_at,
            failure_reason=payment.failure_reason,
        )
        self.db.add(record)
        self.db.flush()

        if subscription.external_customer_ref is None and snapshot.customer_ref:
            subscription.external_customer_ref = snapshot.customer_ref

        if outcome == PaymentOutcome.FAILED:
            logger.warning("Payment failed", extra={
                "user_id": subscription.user_id,
                "payment_id": payment.payment_id,
                "failure_reason": payment.failure_reason,
            })

        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            subscription_id=subscription.id,
            event_id=snapshot.event_id,
        )
