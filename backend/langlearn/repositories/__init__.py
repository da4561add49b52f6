"""Repository layer for subscription data access."""

from langlearn.repositories.subscription_repository import SubscriptionRepository

__all__ = ["SubscriptionRepository"]
