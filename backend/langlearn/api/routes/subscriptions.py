"""
Subscription API routes.

All routes except /webhook require an authenticated user
(request.state.user_id). Paid state changes are never applied here:
routes forward requests to the billing provider and the resulting
webhook events are applied by the reconciler.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from langlearn.api.dependencies.entitlements import get_current_user_id
from langlearn.config.plan_catalog import get_plan_catalog
from langlearn.config.settings import DEFAULT_BILLING_HISTORY_LIMIT
from langlearn.database.session import get_db_session
from langlearn.integrations.billing_client import BillingClient, StripeBillingClient
from langlearn.integrations.stripe_events import (
    dig,
    snapshot_from_stripe_event,
    verify_stripe_event,
)
from langlearn.services.billing_errors import (
    BillingCoreError,
    BillingProviderError,
    ConflictError,
    IncompleteEventError,
    NotFoundError,
    ValidationError,
)
from langlearn.services.billing_reconciler import BillingEventReconciler
from langlearn.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


# Request/Response models
class SetupIntentRequest(BaseModel):
    """Request to start collecting a payment method."""
    email: Optional[str] = Field(None, description="Billing email (defaults to the account email)")
    name: Optional[str] = None


class CreateSubscriptionRequest(BaseModel):
    """Request to start a paid subscription."""
    price_id: str = Field(..., min_length=1, description="Catalog price ID")
    payment_method_id: Optional[str] = Field(None, description="Provider payment method ID")
    email: Optional[str] = None
    name: Optional[str] = None


class UpdateSubscriptionRequest(BaseModel):
    """Request to switch to another price."""
    price_id: str = Field(..., min_length=1, description="Catalog price ID")


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel, at period end by default."""
    cancel_at_period_end: bool = True


class ProviderSubscriptionResponse(BaseModel):
    id: str
    status: str
    cancel_at_period_end: bool = False
    client_secret: Optional[str] = None
    message: str


class PlansListResponse(BaseModel):
    plans: List[Dict[str, Any]]


class BillingHistoryResponse(BaseModel):
    invoices: List[Dict[str, Any]]


def get_billing_client() -> BillingClient:
    """Billing provider client dependency."""
    try:
        return StripeBillingClient()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing provider not configured"
        )


def get_subscription_service(
    db_session=Depends(get_db_session),
    billing_client: BillingClient = Depends(get_billing_client),
) -> SubscriptionService:
    return SubscriptionService(db_session, billing_client)


def get_local_subscription_service(db_session=Depends(get_db_session)) -> SubscriptionService:
    """Service for read-only routes that never call the provider."""
    return SubscriptionService(db_session)


def _http_error(e: BillingCoreError, user_id: Optional[str] = None) -> HTTPException:
    """Translate a billing core error into an HTTP error."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, BillingProviderError):
        logger.error("Billing provider error", extra={"user_id": user_id, "error": str(e)})
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Billing provider request failed"
        )
    logger.error("Unexpected billing error", extra={"user_id": user_id, "error": str(e)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Billing request failed"
    )


def _account_email(request: Request, email: Optional[str]) -> Optional[str]:
    return email or getattr(request.state, "user_email", None)


@router.get("/plans", response_model=PlansListResponse)
async def list_plans():
    """List purchasable plans with their entitlements."""
    return PlansListResponse(plans=get_plan_catalog().to_list())


@router.get("/current")
async def get_current_subscription(
    request: Request,
    service: SubscriptionService = Depends(get_local_subscription_service),
):
    """Get the user's subscription, effective plan and usage."""
    user_id = get_current_user_id(request)
    try:
        return {"subscription": service.get_subscription_info(user_id)}
    except BillingCoreError as e:
        raise _http_error(e, user_id)


@router.post("/setup-intent")
async def create_setup_intent(
    request: Request,
    body: SetupIntentRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a provider setup intent for collecting a payment method."""
    user_id = get_current_user_id(request)
    try:
        return service.create_setup_intent(
            user_id, _account_email(request, body.email), body.name
        )
    except BillingCoreError as e:
        raise _http_error(e, user_id)


@router.post("/create", response_model=ProviderSubscriptionResponse)
async def create_subscription(
    request: Request,
    body: CreateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Start a paid subscription.

    The local plan changes only when the provider's webhook arrives.
    """
    user_id = get_current_user_id(request)
    logger.info("Creating subscription", extra={
        "user_id": user_id,
        "price_id": body.price_id,
    })
    try:
        result = service.start_checkout(
            user_id,
            body.price_id,
            email=_account_email(request, body.email),
            name=body.name,
            payment_method_id=body.payment_method_id,
        )
    except BillingCoreError as e:
        raise _http_error(e, user_id)

    return ProviderSubscriptionResponse(
        id=result.id,
        status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
        client_secret=result.client_secret,
        message="Subscription created; awaiting payment confirmation",
    )


@router.put("/update", response_model=ProviderSubscriptionResponse)
async def update_subscription(
    request: Request,
    body: UpdateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Switch the live subscription to another price."""
    user_id = get_current_user_id(request)
    try:
        result = service.change_plan(user_id, body.price_id)
    except BillingCoreError as e:
        raise _http_error(e, user_id)

    return ProviderSubscriptionResponse(
        id=result.id,
        status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
        message="Plan change requested",
    )


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    body: CancelSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at period end (default) or immediately."""
    user_id = get_current_user_id(request)
    logger.info("Cancellation requested", extra={
        "user_id": user_id,
        "cancel_at_period_end": body.cancel_at_period_end,
    })
    try:
        if body.cancel_at_period_end:
            subscription = service.set_cancel_at_period_end(user_id, True)
            return {
                "message": "Subscription will be canceled at period end",
                "cancel_at_period_end": True,
                "current_period_end": (
                    subscription.current_period_end.isoformat()
                    if subscription.current_period_end else None
                ),
            }
        result = service.cancel_immediately(user_id)
    except BillingCoreError as e:
        raise _http_error(e, user_id)

    return {
        "message": "Subscription cancellation requested",
        "id": result.id,
        "status": result.status,
    }


@router.post("/reactivate")
async def reactivate_subscription(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Withdraw a pending cancellation."""
    user_id = get_current_user_id(request)
    try:
        service.reactivate(user_id)
    except BillingCoreError as e:
        raise _http_error(e, user_id)
    return {"message": "Subscription reactivated", "cancel_at_period_end": False}


@router.get("/billing-history", response_model=BillingHistoryResponse)
async def get_billing_history(
    request: Request,
    limit: int = Query(DEFAULT_BILLING_HISTORY_LIMIT, ge=1, le=100),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """List provider invoices for the user."""
    user_id = get_current_user_id(request)
    try:
        invoices = service.billing_history(user_id, limit=limit)
    except BillingCoreError as e:
        raise _http_error(e, user_id)
    return BillingHistoryResponse(invoices=[invoice.to_dict() for invoice in invoices])


@router.post("/webhook")
async def billing_webhook(
    request: Request,
    db_session=Depends(get_db_session),
):
    """
    Receive Stripe webhook events.

    Response codes drive provider redelivery:
    - 200: applied, stale, duplicate or ignored event type
    - 400: bad signature or malformed event (not retried usefully)
    - 404: no local subscription for the event's references
    - 500: incomplete event or concurrent update (provider retries)
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = verify_stripe_event(payload, signature)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured"
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        snapshot = snapshot_from_stripe_event(event)
        if snapshot is None:
            return {"received": True, "handled": False}
        result = BillingEventReconciler(db_session).apply(snapshot)
    except (IncompleteEventError, ConflictError) as e:
        logger.warning("Billing event failed, requesting redelivery", extra={
            "event_id": dig(event, "id"),
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook handler failed"
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        logger.warning("Billing event for unknown subscription", extra={
            "event_id": dig(event, "id"),
            "error": str(e),
        })
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {"received": True, "handled": True, "outcome": result.outcome.value}
