"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for gating routes on a feature.
The authenticated user ID is placed on request.state.user_id by the
upstream authentication layer.
"""

import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from langlearn.config.settings import get_upgrade_url
from langlearn.database.session import get_db_session
from langlearn.services.billing_errors import NotFoundError, ValidationError
from langlearn.services.feature_access import FeatureAccessGate


logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """
    Extract the authenticated user ID from request state.

    Raises 401 if the authentication layer did not set one.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        logger.error("Route handler accessed without user context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return user_id


def denial_detail(decision) -> dict:
    """Structured 403 body for an EntitlementDenied decision."""
    detail = decision.to_dict()
    detail["upgrade_url"] = get_upgrade_url()
    return detail


def require_feature(feature: str, amount: int = 1) -> Callable:
    """
    Factory function to create a feature access dependency.

    Args:
        feature: Metered or boolean feature key
        amount: Units the gated action will consume

    Returns:
        A FastAPI dependency that returns db_session when access is allowed
        and raises a structured 403 otherwise
    """

    def check_feature(
        request: Request,
        db_session=Depends(get_db_session),
    ):
        user_id = get_current_user_id(request)
        try:
            decision = FeatureAccessGate(db_session).check(user_id, feature, amount)
        except NotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Subscription not found"
            )
        except ValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(e)
            )

        if not decision.allowed:
            logger.warning("Feature access denied", extra={
                "user_id": user_id,
                "feature": feature,
                "reason": decision.reason.code,
            })
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=denial_detail(decision),
            )

        return db_session

    return check_feature
