"""
Error taxonomy for the billing core.

Propagation rules:
- ConflictError and IncompleteEventError bubble to the caller for retry
- StaleEventError and UnmappedPlanError are raised and handled inside the
  reconciler (logged, never surfaced as faults)
- Entitlement denials are NOT exceptions; see services/feature_access.py
"""

from typing import Optional


class BillingCoreError(Exception):
    """Base exception for billing core errors."""
    pass


class ValidationError(BillingCoreError):
    """Malformed event or input. Rejected without any state change."""
    retryable = False


class IncompleteEventError(ValidationError):
    """
    Provider snapshot is missing fields needed to apply it.

    The event is failed as a whole (never partially applied) so that the
    provider redelivers it.
    """
    retryable = True


class NotFoundError(BillingCoreError):
    """No subscription for the given user or provider reference."""
    pass


class ConflictError(BillingCoreError):
    """
    Concurrent update detected on a subscription record.

    Caller retries with a fresh read.
    """
    pass


class StaleEventError(BillingCoreError):
    """Event version is not newer than the state already applied."""

    def __init__(self, message: str, incoming_version: Optional[int] = None,
                 applied_version: Optional[int] = None):
        super().__init__(message)
        self.incoming_version = incoming_version
        self.applied_version = applied_version


class UnmappedPlanError(BillingCoreError):
    """Provider price/product ID is not in the plan catalog."""

    def __init__(self, price_ref: Optional[str]):
        super().__init__(f"No plan mapped for price {price_ref!r}")
        self.price_ref = price_ref


class BillingProviderError(BillingCoreError):
    """Billing provider API call failed."""
    pass
