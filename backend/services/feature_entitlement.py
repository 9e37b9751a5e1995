"""Entitlement resolution - SubscriptionRecord -> EntitlementSnapshot.

Pure and table-driven: no database, no Stripe, no clock. The only business rule
here is which plan a subscription state unlocks:

- no record                    -> free, inactive
- active / trialing            -> record plan, active
- past_due                     -> record plan, inactive (grace period until Stripe
                                  reports updated or deleted)
- canceled / incomplete        -> free, inactive
"""
from typing import Optional

from models import (
    EntitlementSnapshot,
    Plan,
    SubscriptionRecord,
    SubscriptionStatus,
    ACTIVE_STATUSES,
)
from services.plan_registry import get_plan_features

# Statuses whose plan features remain available
PLAN_BEARING_STATUSES = frozenset(ACTIVE_STATUSES | {SubscriptionStatus.PAST_DUE})


def resolve(record: Optional[SubscriptionRecord], pending: bool = False) -> EntitlementSnapshot:
    if record is None:
        return EntitlementSnapshot(
            plan=Plan.FREE,
            active=False,
            status=SubscriptionStatus.NONE,
            features=get_plan_features(Plan.FREE),
            pending=pending,
        )

    plan = record.plan if record.status in PLAN_BEARING_STATUSES else Plan.FREE
    return EntitlementSnapshot(
        plan=plan,
        active=record.status in ACTIVE_STATUSES,
        status=record.status,
        features=get_plan_features(plan),
        cancel_at_period_end=record.cancel_at_period_end,
        current_period_end=record.current_period_end,
        pending=pending,
    )
