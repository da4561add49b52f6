"""
Subscription service for user-initiated billing operations.

Orchestrates:
- Free subscription creation at registration
- Provider customer linking and checkout
- Plan change, cancel-at-period-end, reactivation, immediate cancel
- Billing history

CRITICAL: User requests never set plan or status locally. They only
forward a call to the billing provider (whose result arrives later as a
webhook event) or mirror the cancel_at_period_end intent.
Provider calls are made outside any row lock.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from langlearn.config.plan_catalog import PlanCatalog, get_plan_catalog
from langlearn.config.settings import DEFAULT_BILLING_HISTORY_LIMIT
from langlearn.integrations.billing_client import (
    BillingClient,
    Invoice,
    ProviderSubscription,
    StripeBillingClient,
)
from langlearn.models.base import utcnow
from langlearn.models.subscription import Subscription
from langlearn.repositories.subscription_repository import SubscriptionRepository
from langlearn.services.billing_errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from langlearn.services.entitlement_policy import plan_entitlements
from langlearn.services.subscription_state import (
    days_until_expiry,
    entitlement_plan,
    is_active,
    is_expired,
    is_premium_eligible,
    is_terminal,
    set_cancel_at_period_end,
)
from langlearn.services.usage_meter import usage_summary

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Service for a user's subscription lifecycle.

    Usage:
        service = SubscriptionService(db_session, billing_client)
        service.initialize_free_subscription(user_id)
    """

    def __init__(
        self,
        db_session: Session,
        billing_client: Optional[BillingClient] = None,
        catalog: Optional[PlanCatalog] = None,
    ):
        """
        Initialize subscription service.

        Args:
            db_session: Database session
            billing_client: Provider client (Stripe by default, created lazily)
            catalog: Plan catalog (singleton by default)
        """
        self.db = db_session
        self.repo = SubscriptionRepository(db_session)
        self.catalog = catalog or get_plan_catalog()
        self._client = billing_client

    @property
    def client(self) -> BillingClient:
        if self._client is None:
            self._client = StripeBillingClient()
        return self._client

    # =========================================================================
    # Local state
    # =========================================================================

    def initialize_free_subscription(self, user_id: str) -> Subscription:
        """
        Create the free subscription for a newly registered user.

        Must be called exactly once per account.

        Raises:
            ConflictError: If the user already has a subscription
        """
        if not user_id:
            raise ValidationError("user_id is required")
        subscription = self.repo.create_free(user_id)
        self.db.commit()
        return subscription

    def get_subscription(self, user_id: str) -> Subscription:
        """
        Get a user's subscription. Never creates one.

        Raises:
            NotFoundError: If the user has no subscription
        """
        subscription = self.repo.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for user {user_id}")
        return subscription

    def get_subscription_info(self, user_id: str) -> Dict[str, Any]:
        """Current subscription view for the API."""
        subscription = self.get_subscription(user_id)
        now = utcnow()
        plan = entitlement_plan(subscription)

        def _iso(value):
            return value.isoformat() if value else None

        return {
            "plan": subscription.plan,
            "effective_plan": plan.value,
            "status": subscription.status,
            "billing_cycle": subscription.billing_cycle,
            "is_active": is_active(subscription),
            "is_premium": is_premium_eligible(subscription),
            "is_expired": is_expired(subscription, now),
            "days_until_expiry": days_until_expiry(subscription, now),
            "current_period_start": _iso(subscription.current_period_start),
            "current_period_end": _iso(subscription.current_period_end),
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "trial_end": _iso(subscription.trial_end),
            "canceled_at": _iso(subscription.canceled_at),
            "is_linked": subscription.is_linked,
            "discount": subscription.discount,
            "features": plan_entitlements(plan),
            "usage": usage_summary(subscription, now, plan),
        }

    def _live_subscription_ref(self, subscription: Subscription) -> str:
        if not subscription.external_subscription_ref or is_terminal(subscription):
            raise ValidationError("No active paid subscription found")
        return subscription.external_subscription_ref

    def _validate_price(self, price_ref: str) -> None:
        if not price_ref:
            raise ValidationError("price_ref is required")
        if not self.catalog.is_known_price(price_ref):
            raise ValidationError(f"Unknown price: {price_ref}")

    # =========================================================================
    # Provider customer / checkout
    # =========================================================================

    def ensure_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """
        Get the user's provider customer ID, creating the customer if unlinked.

        The provider call happens before the row is locked; if another
        request linked a customer meanwhile, the existing link wins.
        """
        subscription = self.get_subscription(user_id)
        if subscription.external_customer_ref:
            return subscription.external_customer_ref

        if not email:
            raise ValidationError("email is required to create a billing customer")
        customer_ref = self.client.create_customer(user_id, email, name)

        locked = self.repo.get_for_update(user_id)
        if locked.external_customer_ref:
            logger.warning("Customer linked concurrently, discarding new customer", extra={
                "user_id": user_id,
                "discarded_customer_ref": customer_ref,
            })
            existing = locked.external_customer_ref
            self.db.commit()
            return existing

        locked.external_customer_ref = customer_ref
        self._commit(user_id)
        logger.info("Linked billing customer", extra={
            "user_id": user_id,
            "customer_ref": customer_ref,
        })
        return customer_ref

    def create_setup_intent(self, user_id: str, email: str, name: Optional[str] = None) -> Dict[str, str]:
        """Start collecting a payment method for the user."""
        customer_ref = self.ensure_customer(user_id, email, name)
        client_secret = self.client.create_setup_intent(customer_ref)
        return {"client_secret": client_secret, "customer_ref": customer_ref}

    def start_checkout(
        self,
        user_id: str,
        price_ref: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> ProviderSubscription:
        """
        Ask the provider to create a paid subscription.

        Local plan/status stay as they are; the provider's
        customer.subscription.created event links the new subscription.

        Raises:
            ValidationError: Unknown price or missing email for a new customer
            ConflictError: The user already has a live paid subscription
        """
        self._validate_price(price_ref)
        subscription = self.get_subscription(user_id)
        if subscription.external_subscription_ref and not is_terminal(subscription):
            raise ConflictError("User already has a paid subscription; change plan instead")

        customer_ref = self.ensure_customer(user_id, email, name)
        result = self.client.create_subscription(
            customer_ref, price_ref, user_id, payment_method_id=payment_method_id
        )
        logger.info("Checkout started", extra={
            "user_id": user_id,
            "price_ref": price_ref,
            "provider_subscription": result.id,
            "provider_status": result.status,
        })
        return result

    # =========================================================================
    # Changes to an existing paid subscription
    # =========================================================================

    def change_plan(self, user_id: str, price_ref: str) -> ProviderSubscription:
        """Switch the live subscription to another price (prorated)."""
        self._validate_price(price_ref)
        subscription = self.get_subscription(user_id)
        ref = self._live_subscription_ref(subscription)
        result = self.client.update_subscription(ref, price_ref=price_ref)
        logger.info("Plan change requested", extra={
            "user_id": user_id,
            "price_ref": price_ref,
        })
        return result

    def set_cancel_at_period_end(self, user_id: str, cancel_at_period_end: bool = True) -> Subscription:
        """
        Declare (or withdraw) the intent to cancel at period end.

        Forwarded to the provider, then mirrored locally. Status is untouched.
        """
        subscription = self.get_subscription(user_id)
        ref = self._live_subscription_ref(subscription)
        self.client.update_subscription(ref, cancel_at_period_end=cancel_at_period_end)

        locked = self.repo.get_for_update(user_id)
        set_cancel_at_period_end(locked, cancel_at_period_end)
        self._commit(user_id)
        logger.info("Cancel at period end updated", extra={
            "user_id": user_id,
            "cancel_at_period_end": cancel_at_period_end,
        })
        return locked

    def reactivate(self, user_id: str) -> Subscription:
        """Withdraw a pending cancel-at-period-end."""
        subscription = self.get_subscription(user_id)
        if not subscription.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation")
        return self.set_cancel_at_period_end(user_id, False)

    def cancel_immediately(self, user_id: str) -> ProviderSubscription:
        """
        Cancel the paid subscription now.

        The local record moves to canceled/free when the provider's
        deletion event is reconciled.
        """
        subscription = self.get_subscription(user_id)
        ref = self._live_subscription_ref(subscription)
        result = self.client.cancel_subscription(ref)
        logger.info("Immediate cancellation requested", extra={"user_id": user_id})
        return result

    def billing_history(self, user_id: str, limit: int = DEFAULT_BILLING_HISTORY_LIMIT) -> List[Invoice]:
        """Provider invoices for the user, newest first. Empty if unlinked."""
        subscription = self.get_subscription(user_id)
        if not subscription.external_customer_ref:
            return []
        return self.client.list_invoices(subscription.external_customer_ref, limit=limit)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _commit(self, user_id: str) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError(f"Concurrent update on subscription for user {user_id}")
