"""
Subscription repository for data access operations.

Encapsulates all database operations for subscriptions with:
- Lookups by user and by billing provider reference
- Row-locked reads for read-modify-write sequences
- Payment history deduplication queries

The repository never commits; the calling service owns the transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from langlearn.models.base import utcnow
from langlearn.models.payment_record import PaymentRecord
from langlearn.models.subscription import Subscription
from langlearn.services.billing_errors import ConflictError
from langlearn.services.subscription_state import (
    ACTIVE_STATUSES,
    build_free_subscription,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Repository for subscription data access."""

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def _query(self, for_update: bool = False):
        query = self.db.query(Subscription)
        if for_update:
            # Re-read the row even if it is already in the identity map
            query = query.with_for_update().populate_existing()
        return query

    def get_by_user_id(self, user_id: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Get the subscription owned by a user.

        Args:
            user_id: Owning account ID
            for_update: Take a row lock (SELECT ... FOR UPDATE)

        Returns:
            Subscription if found, None otherwise
        """
        return self._query(for_update).filter(
            Subscription.user_id == user_id
        ).first()

    def get_for_update(self, user_id: str) -> Optional[Subscription]:
        return self.get_by_user_id(user_id, for_update=True)

    def get_by_external_subscription_ref(
        self,
        subscription_ref: str,
        for_update: bool = False
    ) -> Optional[Subscription]:
        """Get subscription by billing provider subscription ID."""
        if not subscription_ref:
            return None
        return self._query(for_update).filter(
            Subscription.external_subscription_ref == subscription_ref
        ).first()

    def get_by_external_customer_ref(
        self,
        customer_ref: str,
        for_update: bool = False
    ) -> Optional[Subscription]:
        """Get subscription by billing provider customer ID."""
        if not customer_ref:
            return None
        return self._query(for_update).filter(
            Subscription.external_customer_ref == customer_ref
        ).first()

    def create_free(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """
        Insert the registration-time free subscription for a user.

        Raises:
            ConflictError: If the user already has a subscription
        """
        subscription = build_free_subscription(user_id, now)
        try:
            self.db.add(subscription)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Subscription already exists for user {user_id}")

        logger.info("Created free subscription", extra={
            "user_id": user_id,
            "subscription_id": subscription.id,
        })
        return subscription

    def payment_exists(self, subscription_id: str, payment_id: str) -> bool:
        """Check whether a payment ID is already in a subscription's history."""
        return self.db.query(PaymentRecord.id).filter(
            PaymentRecord.subscription_id == subscription_id,
            PaymentRecord.payment_id == payment_id,
        ).first() is not None

    def get_active_subscriptions(self) -> List[Subscription]:
        """Get all subscriptions currently granting access (active or trialing)."""
        return self.db.query(Subscription).filter(
            Subscription.status.in_(list(ACTIVE_STATUSES))
        ).order_by(Subscription.created_at.desc()).all()

    def get_expiring_subscriptions(
        self,
        days: int = 7,
        now: Optional[datetime] = None
    ) -> List[Subscription]:
        """
        Get active subscriptions whose period ends within `days`.

        Subscriptions already flagged cancel_at_period_end are included;
        callers decide what to do with them.
        """
        now = now or utcnow()
        horizon = now + timedelta(days=days)
        return self.db.query(Subscription).filter(
            Subscription.status.in_(list(ACTIVE_STATUSES)),
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end >= now,
            Subscription.current_period_end <= horizon,
        ).order_by(Subscription.current_period_end.asc()).all()
