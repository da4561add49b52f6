"""
Plan catalog configuration loader.

Loads langlearn/config/plans.yml, the mapping from billing provider price
IDs to subscription plans and billing intervals.

Consumers:
  - BillingEventReconciler: resolve plan from a snapshot's price ID
  - SubscriptionService: validate price IDs before calling the provider
  - Subscriptions API: expose the plan listing to the frontend

Usage:
    from langlearn.config.plan_catalog import get_plan_catalog

    catalog = get_plan_catalog()
    plan = catalog.plan_for_price("price_pro_monthly")   # Plan.PRO
    entries = catalog.entries
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

from langlearn.config.settings import get_plan_catalog_path
from langlearn.models.subscription import BillingCycle, Plan
from langlearn.services.billing_errors import UnmappedPlanError
from langlearn.services.entitlement_policy import plan_entitlements

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanCatalogEntry:
    """One purchasable price point."""
    plan_id: str
    plan: Plan
    display_name: str
    price_ref: Optional[str]
    interval: Optional[BillingCycle]
    amount_cents: int
    currency: str = "usd"
    description: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.plan_id,
            "plan": self.plan.value,
            "name": self.display_name,
            "price": self.amount_cents,
            "currency": self.currency,
            "interval": self.interval.value if self.interval else None,
            "price_ref": self.price_ref,
            "description": self.description,
            "features": plan_entitlements(self.plan),
        }
        data.update(self.extras)
        return data


class PlanCatalog:
    """
    Thread-safe singleton loader for plans.yml.

    Provides lookup by price ID and bulk access for the API layer.
    """

    _instance: Optional["PlanCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or get_plan_catalog_path()
        self._raw: Dict[str, Any] = {}
        self._entries: List[PlanCatalogEntry] = []
        self._by_price: Dict[str, PlanCatalogEntry] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_path(self) -> Path:
        if self._config_path:
            path = Path(self._config_path)
        else:
            path = Path(__file__).parent / "plans.yml"

        if not path.exists():
            raise FileNotFoundError(f"Plan catalog not found: {path}")
        return path

    def _parse_entry(self, item: Dict[str, Any]) -> PlanCatalogEntry:
        price_ref = item.get("price_ref")
        env_name = item.get("price_ref_env")
        if env_name and os.getenv(env_name):
            price_ref = os.getenv(env_name)

        interval = item.get("interval")
        known = {
            "plan_id", "plan", "display_name", "price_ref", "price_ref_env",
            "interval", "amount_cents", "currency", "description",
        }
        return PlanCatalogEntry(
            plan_id=item["plan_id"],
            plan=Plan(item["plan"]),
            display_name=item.get("display_name", item["plan_id"]),
            price_ref=price_ref,
            interval=BillingCycle(interval) if interval else None,
            amount_cents=int(item.get("amount_cents", 0)),
            currency=item.get("currency", "usd"),
            description=item.get("description"),
            extras={k: v for k, v in item.items() if k not in known},
        )

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading plan catalog from %s", path)

            with open(path, "r") as f:
                self._raw = yaml.safe_load(f) or {}

            entries = [self._parse_entry(item) for item in self._raw.get("plans", [])]
            by_price: Dict[str, PlanCatalogEntry] = {}
            for entry in entries:
                if not entry.price_ref:
                    continue
                if entry.price_ref in by_price:
                    raise ValueError(f"Duplicate price_ref in plan catalog: {entry.price_ref}")
                by_price[entry.price_ref] = entry

            self._entries = entries
            self._by_price = by_price

            logger.info(
                "Loaded plan catalog with %d entries, %d priced",
                len(self._entries),
                len(self._by_price),
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read the YAML from disk (e.g. after a config change)."""
        self._load()

    @property
    def entries(self) -> List[PlanCatalogEntry]:
        return list(self._entries)

    def entry_for_price(self, price_ref: Optional[str]) -> PlanCatalogEntry:
        """
        Look up a catalog entry by provider price ID.

        Raises:
            UnmappedPlanError: If the price ID is not in the catalog
        """
        entry = self._by_price.get(price_ref) if price_ref else None
        if entry is None:
            raise UnmappedPlanError(price_ref)
        return entry

    def plan_for_price(self, price_ref: Optional[str]) -> Plan:
        """
        Resolve a price ID to a plan, failing safe to FREE.

        An unknown price never grants a paid plan.
        """
        try:
            return self.entry_for_price(price_ref).plan
        except UnmappedPlanError as e:
            logger.warning("Unmapped price ID, resolving to free plan", extra={
                "price_ref": e.price_ref,
            })
            return Plan.FREE

    def is_known_price(self, price_ref: Optional[str]) -> bool:
        return bool(price_ref) and price_ref in self._by_price

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]


# ------------------------------------------------------------------
# Module-level accessors
# ------------------------------------------------------------------

def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """Return the singleton PlanCatalog."""
    return PlanCatalog(config_path)


def reset_plan_catalog() -> None:
    """Reset singleton (for tests only)."""
    PlanCatalog._instance = None
