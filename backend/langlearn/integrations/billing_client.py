"""
Billing provider client capability.

The core depends only on the BillingClient interface; StripeBillingClient
is the production implementation on top of the `stripe` SDK.

Calls made here never change local subscription state. The provider's
answer arrives later as a webhook event and goes through the reconciler.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from langlearn.config.settings import get_stripe_secret_key
from langlearn.integrations.stripe_events import dig
from langlearn.services.billing_errors import BillingProviderError

logger = logging.getLogger(__name__)


@dataclass
class ProviderSubscription:
    """Provider's immediate answer to a subscription call."""
    id: str
    status: str
    cancel_at_period_end: bool = False
    client_secret: Optional[str] = None


@dataclass
class Invoice:
    """One entry of the provider's invoice listing."""
    id: str
    amount_cents: int
    currency: str
    status: Optional[str]
    created_at: datetime
    description: str = "Subscription"
    invoice_url: Optional[str] = None
    pdf_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "date": self.created_at.isoformat(),
            "description": self.description,
            "invoice_url": self.invoice_url,
            "pdf_url": self.pdf_url,
        }


class BillingClient(ABC):
    """Abstract billing provider operations."""

    @abstractmethod
    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """
        Create a provider customer.

        Returns:
            Provider customer ID
        """
        pass

    @abstractmethod
    def create_setup_intent(self, customer_ref: str) -> str:
        """
        Start collecting a payment method for off-session charges.

        Returns:
            Client secret for the frontend
        """
        pass

    @abstractmethod
    def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        user_id: str,
        payment_method_id: Optional[str] = None,
    ) -> ProviderSubscription:
        pass

    @abstractmethod
    def update_subscription(
        self,
        subscription_ref: str,
        price_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> ProviderSubscription:
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_ref: str) -> ProviderSubscription:
        """Cancel immediately (provider sends a deletion event)."""
        pass

    @abstractmethod
    def list_invoices(self, customer_ref: str, limit: int = 20) -> List[Invoice]:
        pass


def _to_provider_subscription(obj: Any) -> ProviderSubscription:
    return ProviderSubscription(
        id=obj["id"],
        status=obj["status"],
        cancel_at_period_end=bool(dig(obj, "cancel_at_period_end")),
        client_secret=dig(obj, "latest_invoice", "payment_intent", "client_secret"),
    )


class StripeBillingClient(BillingClient):
    """
    Stripe implementation of BillingClient.

    All stripe.StripeError failures are wrapped in BillingProviderError.
    """

    def __init__(self, api_key: Optional[str] = None):
        """
        Args:
            api_key: Stripe secret key (or from STRIPE_SECRET_KEY env var)
        """
        self.api_key = api_key or get_stripe_secret_key()
        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured")

    def _wrap(self, operation: str, error: "stripe.StripeError") -> BillingProviderError:
        logger.error("Stripe call failed", extra={
            "operation": operation,
            "error": str(error),
            "stripe_code": getattr(error, "code", None),
        })
        return BillingProviderError(f"Billing provider error during {operation}: {error}")

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                name=name,
                metadata={"user_id": user_id},
            )
        except stripe.StripeError as e:
            raise self._wrap("create_customer", e)

        logger.info("Created Stripe customer", extra={
            "user_id": user_id,
            "customer_ref": customer["id"],
        })
        return customer["id"]

    def create_setup_intent(self, customer_ref: str) -> str:
        try:
            intent = stripe.SetupIntent.create(
                api_key=self.api_key,
                customer=customer_ref,
                usage="off_session",
            )
        except stripe.StripeError as e:
            raise self._wrap("create_setup_intent", e)
        return intent["client_secret"]

    def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        user_id: str,
        payment_method_id: Optional[str] = None,
    ) -> ProviderSubscription:
        params: Dict[str, Any] = {
            "customer": customer_ref,
            "items": [{"price": price_ref}],
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {"user_id": user_id},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id

        try:
            subscription = stripe.Subscription.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            raise self._wrap("create_subscription", e)

        logger.info("Created Stripe subscription", extra={
            "user_id": user_id,
            "subscription_ref": subscription["id"],
            "status": subscription["status"],
        })
        return _to_provider_subscription(subscription)

    def update_subscription(
        self,
        subscription_ref: str,
        price_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> ProviderSubscription:
        params: Dict[str, Any] = {}
        try:
            if price_ref is not None:
                current = stripe.Subscription.retrieve(subscription_ref, api_key=self.api_key)
                item_id = dig(current, "items", "data", 0, "id")
                if item_id is None:
                    raise BillingProviderError(
                        f"Subscription {subscription_ref} has no items to update"
                    )
                params["items"] = [{"id": item_id, "price": price_ref}]
                params["proration_behavior"] = "create_prorations"
            if cancel_at_period_end is not None:
                params["cancel_at_period_end"] = cancel_at_period_end

            subscription = stripe.Subscription.modify(
                subscription_ref, api_key=self.api_key, **params
            )
        except stripe.StripeError as e:
            raise self._wrap("update_subscription", e)

        return _to_provider_subscription(subscription)

    def cancel_subscription(self, subscription_ref: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.cancel(subscription_ref, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._wrap("cancel_subscription", e)
        return _to_provider_subscription(subscription)

    def list_invoices(self, customer_ref: str, limit: int = 20) -> List[Invoice]:
        try:
            invoices = stripe.Invoice.list(
                api_key=self.api_key,
                customer=customer_ref,
                limit=limit,
            )
        except stripe.StripeError as e:
            raise self._wrap("list_invoices", e)

        return [
            Invoice(
                id=inv["id"],
                amount_cents=int(dig(inv, "amount_paid") or 0),
                currency=dig(inv, "currency") or "usd",
                status=dig(inv, "status"),
                created_at=datetime.fromtimestamp(inv["created"], tz=timezone.utc),
                description=dig(inv, "lines", "data", 0, "description") or "Subscription",
                invoice_url=dig(inv, "hosted_invoice_url"),
                pdf_url=dig(inv, "invoice_pdf"),
            )
            for inv in invoices["data"]
        ]
