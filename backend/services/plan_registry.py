"""Canonical Plan Registry - Single Source of Truth for plan definitions.

This is the AUTHORITATIVE source for:
- Plan codes and their hierarchy
- Feature entitlements per plan
- Display metadata served by /subscription/plans

RULES:
1. Backend is authoritative - all entitlement checks happen server-side
2. Stripe is a billing system, not a permission system
3. Stripe price ids live in configuration, never here
"""
from typing import Any, Dict, List, Optional
import logging

from models import Plan, PlanFeatures, features_to_public

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN HIERARCHY
# ============================================================================
PLAN_HIERARCHY = {
    Plan.FREE: 0,
    Plan.PRO: 1,
    Plan.ENTERPRISE: 2,
}


def plan_meets_minimum(plan: Plan, minimum: Plan) -> bool:
    return PLAN_HIERARCHY.get(plan, 0) >= PLAN_HIERARCHY.get(minimum, 0)


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    """Lenient plan lookup for metadata read back from Stripe. None if unrecognized."""
    if not value:
        return None
    try:
        return Plan(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unrecognized plan value: {value!r}")
        return None


# ============================================================================
# FEATURE ENTITLEMENT MATRIX - What each plan gets (-1 = unlimited)
# ============================================================================
FEATURE_MATRIX: Dict[Plan, PlanFeatures] = {
    Plan.FREE: PlanFeatures(
        max_documents=5,
        max_storage_mb=100,
        advanced_analytics=False,
        priority_support=False,
        custom_branding=False,
        api_access=False,
        team_collaboration=False,
    ),
    Plan.PRO: PlanFeatures(
        max_documents=-1,
        max_storage_mb=1000,
        advanced_analytics=True,
        priority_support=True,
        custom_branding=True,
        api_access=True,
        team_collaboration=False,
    ),
    Plan.ENTERPRISE: PlanFeatures(
        max_documents=-1,
        max_storage_mb=-1,
        advanced_analytics=True,
        priority_support=True,
        custom_branding=True,
        api_access=True,
        team_collaboration=True,
    ),
}

# Public (camelCase) feature name -> PlanFeatures attribute
FEATURE_KEYS = {
    "maxDocuments": "max_documents",
    "maxStorageMB": "max_storage_mb",
    "advancedAnalytics": "advanced_analytics",
    "prioritySupport": "priority_support",
    "customBranding": "custom_branding",
    "apiAccess": "api_access",
    "teamCollaboration": "team_collaboration",
}


def get_plan_features(plan: Plan) -> PlanFeatures:
    return FEATURE_MATRIX.get(plan, FEATURE_MATRIX[Plan.FREE])


def minimum_plan_for_feature(feature_name: str) -> Optional[Plan]:
    """Lowest plan that grants feature_name, or None if no plan does."""
    for plan in sorted(PLAN_HIERARCHY, key=PLAN_HIERARCHY.get):
        if feature_granted(get_plan_features(plan), feature_name):
            return plan
    return None


def feature_granted(features: PlanFeatures, feature_name: str) -> bool:
    """A feature is granted when its value is True or -1 (unlimited).

    Accepts either the public camelCase name or the attribute name.
    Unknown features are never granted.
    """
    attr = FEATURE_KEYS.get(feature_name, feature_name)
    if attr not in PlanFeatures.model_fields:
        logger.warning(f"Feature check for unknown feature: {feature_name}")
        return False
    value = getattr(features, attr)
    if isinstance(value, bool):
        return value
    return value == -1


# ============================================================================
# DISPLAY
# ============================================================================
PLAN_DISPLAY = {
    Plan.FREE: {
        "name": "Free",
        "description": "Get started with the essentials",
        "is_popular": False,
    },
    Plan.PRO: {
        "name": "Pro",
        "description": "Unlimited documents and advanced analytics",
        "is_popular": True,
    },
    Plan.ENTERPRISE: {
        "name": "Enterprise",
        "description": "Unlimited everything plus team collaboration",
        "is_popular": False,
    },
}


def get_all_plans() -> List[Dict[str, Any]]:
    """Plan table for pricing pages, lowest tier first."""
    plans = []
    for plan in sorted(PLAN_HIERARCHY, key=PLAN_HIERARCHY.get):
        display = PLAN_DISPLAY[plan]
        plans.append({
            "code": plan.value,
            "name": display["name"],
            "description": display["description"],
            "isPopular": display["is_popular"],
            "purchasable": plan != Plan.FREE,
            "features": features_to_public(get_plan_features(plan)),
        })
    return plans
