"""
AI usage API routes.

The AI chat proxy itself lives outside the billing core; these routes let
it read the user's quota and report consumed messages.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from langlearn.api.dependencies.entitlements import (
    denial_detail,
    get_current_user_id,
    require_feature,
)
from langlearn.database.session import get_db_session
from langlearn.services.billing_errors import ConflictError, NotFoundError, ValidationError
from langlearn.services.entitlement_policy import MeteredFeature
from langlearn.services.feature_access import FeatureAccessGate
from langlearn.services.subscription_state import entitlement_plan
from langlearn.services.usage_meter import usage_summary
from langlearn.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai"])


class RecordUsageRequest(BaseModel):
    """Messages consumed by a completed AI call."""
    amount: int = Field(1, ge=1, le=100)


@router.get("/usage")
async def get_ai_usage(
    request: Request,
    db_session=Depends(get_db_session),
):
    """Get AI chat usage, limit and reset date for the current period."""
    user_id = get_current_user_id(request)
    subscription = SubscriptionRepository(db_session).get_by_user_id(user_id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found"
        )

    plan = entitlement_plan(subscription)
    summary = usage_summary(subscription, plan=plan)
    return {
        "plan": plan.value,
        "usage": summary[MeteredFeature.AI_CHAT_MESSAGES],
    }


@router.post("/usage")
async def record_ai_usage(
    request: Request,
    body: RecordUsageRequest,
    db_session=Depends(require_feature(MeteredFeature.AI_CHAT_MESSAGES)),
):
    """
    Record AI chat messages after a successful AI call.

    The quota is re-checked atomically; losing the race for the last
    message yields the same structured 403 as the up-front check.
    """
    user_id = get_current_user_id(request)
    try:
        decision = FeatureAccessGate(db_session).record(
            user_id, MeteredFeature.AI_CHAT_MESSAGES, body.amount
        )
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found"
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=denial_detail(decision),
        )
    return {"recorded": body.amount, "remaining": decision.remaining}
