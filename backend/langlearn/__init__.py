"""
Billing core for the language-learning backend.

Subscriptions, usage quotas and billing-provider reconciliation.
"""

__version__ = "1.0.0"
