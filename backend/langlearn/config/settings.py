"""
Environment-driven settings for the billing core.

All values are read lazily through small accessor functions so tests can
override them with monkeypatch.setenv.
"""

import os
from typing import Optional


# Window used to roll over usage counters for records with no billing period
DEFAULT_FREE_USAGE_WINDOW_DAYS = 30

# Attempts for a check-and-increment before a ConflictError is surfaced
DEFAULT_USAGE_CONFLICT_MAX_RETRIES = 5

# Invoices returned by the billing history endpoint
DEFAULT_BILLING_HISTORY_LIMIT = 20


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def get_free_usage_window_days() -> int:
    return _int_env("FREE_USAGE_WINDOW_DAYS", DEFAULT_FREE_USAGE_WINDOW_DAYS)


def get_usage_conflict_max_retries() -> int:
    return _int_env("USAGE_CONFLICT_MAX_RETRIES", DEFAULT_USAGE_CONFLICT_MAX_RETRIES)


def get_stripe_secret_key() -> Optional[str]:
    return os.getenv("STRIPE_SECRET_KEY")


def get_stripe_webhook_secret() -> Optional[str]:
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def get_plan_catalog_path() -> Optional[str]:
    return os.getenv("PLAN_CATALOG_PATH")


def get_upgrade_url() -> str:
    return os.getenv("UPGRADE_URL", "/pricing")
