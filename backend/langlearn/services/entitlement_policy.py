"""
Entitlement policy - plan to feature limit mapping.

IMPORTANT: This is the single source of truth for all feature limits.
No other module may hard-code a limit; limits are never copied onto the
Subscription record. Everything here is pure: no state, no I/O.
"""

from typing import Any, Dict, Optional, Union

from langlearn.models.subscription import Plan


# Reserved limit value meaning "unlimited"; bypasses all counter comparisons
UNLIMITED = -1


class MeteredFeature:
    """Feature keys for quota-limited capabilities (usage counter names)."""
    LESSONS_COMPLETED = "lessons_completed"
    AI_CHAT_MESSAGES = "ai_chat_messages"


class BooleanFeature:
    """Feature keys for on/off capabilities."""
    OFFLINE_ACCESS = "offline_access"
    ADVANCED_ANALYTICS = "advanced_analytics"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_LEARNING_PATH = "custom_learning_path"


METERED_FEATURES = frozenset({
    MeteredFeature.LESSONS_COMPLETED,
    MeteredFeature.AI_CHAT_MESSAGES,
})

BOOLEAN_FEATURES = frozenset({
    BooleanFeature.OFFLINE_ACCESS,
    BooleanFeature.ADVANCED_ANALYTICS,
    BooleanFeature.PRIORITY_SUPPORT,
    BooleanFeature.CUSTOM_LEARNING_PATH,
})

# Plans ordered cheapest first
PLAN_ORDER = (Plan.FREE, Plan.PREMIUM, Plan.PRO)


# Plan feature matrix
PLAN_ENTITLEMENTS: Dict[str, Dict[str, Union[int, bool]]] = {
    Plan.FREE.value: {
        MeteredFeature.LESSONS_COMPLETED: 3,
        MeteredFeature.AI_CHAT_MESSAGES: 10,
        BooleanFeature.OFFLINE_ACCESS: False,
        BooleanFeature.ADVANCED_ANALYTICS: False,
        BooleanFeature.PRIORITY_SUPPORT: False,
        BooleanFeature.CUSTOM_LEARNING_PATH: False,
    },
    Plan.PREMIUM.value: {
        MeteredFeature.LESSONS_COMPLETED: 20,
        MeteredFeature.AI_CHAT_MESSAGES: 100,
        BooleanFeature.OFFLINE_ACCESS: True,
        BooleanFeature.ADVANCED_ANALYTICS: False,
        BooleanFeature.PRIORITY_SUPPORT: True,
        BooleanFeature.CUSTOM_LEARNING_PATH: False,
    },
    Plan.PRO.value: {
        MeteredFeature.LESSONS_COMPLETED: UNLIMITED,
        MeteredFeature.AI_CHAT_MESSAGES: UNLIMITED,
        BooleanFeature.OFFLINE_ACCESS: True,
        BooleanFeature.ADVANCED_ANALYTICS: True,
        BooleanFeature.PRIORITY_SUPPORT: True,
        BooleanFeature.CUSTOM_LEARNING_PATH: True,
    },
}


def _plan_key(plan: Union[Plan, str, None]) -> Optional[str]:
    if plan is None:
        return None
    return plan.value if isinstance(plan, Plan) else str(plan)


def limit_for(plan: Union[Plan, str], feature: str) -> int:
    """
    Get the numeric quota for a metered feature.

    A feature (or plan) absent from the table is limit 0: deny by default,
    never unlimited by omission.

    Returns:
        The limit, or UNLIMITED (-1)
    """
    value = PLAN_ENTITLEMENTS.get(_plan_key(plan), {}).get(feature)
    if isinstance(value, bool) or value is None:
        return 0
    return int(value)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def has_boolean_feature(plan: Union[Plan, str], feature: str) -> bool:
    """Check if a plan grants an on/off capability."""
    value = PLAN_ENTITLEMENTS.get(_plan_key(plan), {}).get(feature)
    return value is True


def required_plan_for(feature: str) -> Optional[Plan]:
    """
    Get the cheapest plan that grants a feature.

    Used to tell a denied user what to upgrade to.
    """
    for plan in PLAN_ORDER:
        if feature in BOOLEAN_FEATURES:
            if has_boolean_feature(plan, feature):
                return plan
        elif limit_for(plan, feature) != 0:
            return plan
    return None


def plan_entitlements(plan: Union[Plan, str]) -> Dict[str, Any]:
    """Get a copy of the full entitlement row for a plan (for display)."""
    return dict(PLAN_ENTITLEMENTS.get(_plan_key(plan), {}))
