"""Subscription transitions - the single write path into the subscription store.

Both the webhook ingestor and reconciliation sync build a SubscriptionTransition
from Stripe data and hand it to SubscriptionTransitionEngine.apply(). Nothing
else writes subscription records.

Ordering: every transition carries source_timestamp (event `created` for webhooks,
fetch time for sync). Timestamps are compared at Stripe precision (whole seconds),
so a transition from the same second as the record applies in arrival order. A
transition older than the record's processor_updated_at is stale and may only
backfill Stripe ids that are still null.

Concurrency: read, compute changes, then compare-and-swap on `version`. A lost
swap re-reads and retries (MAX_CAS_ATTEMPTS), then raises ConcurrentUpdateError.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging

from errors import ConcurrentUpdateError
from models import (
    AuditAction,
    EntitlementSnapshot,
    Plan,
    SubscriptionRecord,
    SubscriptionStatus,
    WebhookEventKind,
    as_utc,
    utc_now,
)
from services.feature_entitlement import resolve
from services.notification_service import lifecycle_event_type
from services.plan_registry import parse_plan
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5

# Stripe subscription.status -> local status
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.INCOMPLETE,
}

# Fields a stale transition is still allowed to fill in
IDENTIFIER_FIELDS = ("processor_subscription_id", "processor_customer_id")
STATE_FIELDS = (
    "status",
    "plan",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
)
BOOKKEEPING_FIELDS = frozenset({"processor_updated_at", "updated_at"})


@dataclass(frozen=True)
class SubscriptionTransition:
    """Desired processor-reported state. None fields are retained from the record."""
    kind: WebhookEventKind
    source_timestamp: datetime
    status: Optional[SubscriptionStatus] = None
    plan: Optional[Plan] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    processor_subscription_id: Optional[str] = None
    processor_customer_id: Optional[str] = None


@dataclass(frozen=True)
class TransitionOutcome:
    record: SubscriptionRecord
    previous: Optional[SubscriptionRecord]
    snapshot: EntitlementSnapshot
    changed: bool
    stale: bool


# ============================================================================
# STRIPE PAYLOAD -> TRANSITION
# ============================================================================

def from_epoch(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def map_stripe_status(value: Optional[str]) -> SubscriptionStatus:
    status = STRIPE_STATUS_MAP.get((value or "").lower())
    if status is None:
        logger.warning(f"Unknown Stripe subscription status {value!r}, treating as incomplete")
        return SubscriptionStatus.INCOMPLETE
    return status


def stripe_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def subscription_periods(subscription: Dict[str, Any]):
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions moved periods onto subscription items
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return from_epoch(start), from_epoch(end)


def subscription_state_transition(
    subscription: Dict[str, Any],
    source_timestamp: datetime,
    kind: WebhookEventKind = WebhookEventKind.SUBSCRIPTION_UPDATED,
) -> SubscriptionTransition:
    """Full processor-reported state of a subscription. Used by webhooks and sync alike."""
    period_start, period_end = subscription_periods(subscription)
    metadata = subscription.get("metadata") or {}
    return SubscriptionTransition(
        kind=kind,
        source_timestamp=source_timestamp,
        status=map_stripe_status(subscription.get("status")),
        plan=parse_plan(metadata.get("plan")),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        processor_subscription_id=subscription.get("id"),
        processor_customer_id=stripe_id(subscription.get("customer")),
    )


def subscription_deleted_transition(
    source_timestamp: datetime,
    subscription: Optional[Dict[str, Any]] = None,
    kind: WebhookEventKind = WebhookEventKind.SUBSCRIPTION_DELETED,
) -> SubscriptionTransition:
    subscription = subscription or {}
    return SubscriptionTransition(
        kind=kind,
        source_timestamp=source_timestamp,
        status=SubscriptionStatus.CANCELED,
        plan=Plan.FREE,
        cancel_at_period_end=False,
        processor_subscription_id=subscription.get("id"),
        processor_customer_id=stripe_id(subscription.get("customer")),
    )


def checkout_completed_transition(
    session: Dict[str, Any],
    source_timestamp: datetime,
    subscription: Optional[Dict[str, Any]] = None,
) -> SubscriptionTransition:
    metadata = session.get("metadata") or {}
    period_start, period_end = subscription_periods(subscription) if subscription else (None, None)
    return SubscriptionTransition(
        kind=WebhookEventKind.CHECKOUT_COMPLETED,
        source_timestamp=source_timestamp,
        status=SubscriptionStatus.ACTIVE,
        plan=parse_plan(metadata.get("plan")) or Plan.PRO,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")) if subscription else False,
        processor_subscription_id=stripe_id(session.get("subscription")),
        processor_customer_id=stripe_id(session.get("customer")),
    )


def payment_failed_transition(
    invoice: Dict[str, Any],
    source_timestamp: datetime,
) -> SubscriptionTransition:
    return SubscriptionTransition(
        kind=WebhookEventKind.INVOICE_PAYMENT_FAILED,
        source_timestamp=source_timestamp,
        status=SubscriptionStatus.PAST_DUE,
        processor_subscription_id=invoice_subscription_id(invoice),
        processor_customer_id=stripe_id(invoice.get("customer")),
    )


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = stripe_id(invoice.get("subscription"))
    if sub:
        return sub
    # 2025+ API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return stripe_id(details.get("subscription"))


# ============================================================================
# PURE CHANGE COMPUTATION
# ============================================================================

def processor_time(value: Optional[datetime]) -> Optional[datetime]:
    """UTC, truncated to whole seconds like Stripe event `created`."""
    value = as_utc(value)
    return value.replace(microsecond=0) if value is not None else None


def is_stale(current: Optional[SubscriptionRecord], transition: SubscriptionTransition) -> bool:
    if current is None or current.processor_updated_at is None:
        return False
    return processor_time(transition.source_timestamp) < processor_time(current.processor_updated_at)


def plan_changes(
    current: Optional[SubscriptionRecord],
    transition: SubscriptionTransition,
) -> Dict[str, Any]:
    """Fields that must change on `current` to reflect `transition`. Empty dict = no-op."""
    changes: Dict[str, Any] = {}
    stale = is_stale(current, transition)

    for field in IDENTIFIER_FIELDS:
        value = getattr(transition, field)
        if value is None:
            continue
        existing = getattr(current, field) if current else None
        if stale and existing is not None:
            continue
        if value != existing:
            changes[field] = value

    if stale:
        return changes

    for field in STATE_FIELDS:
        value = getattr(transition, field)
        if value is None:
            continue
        existing = getattr(current, field) if current else None
        if field in ("current_period_start", "current_period_end"):
            existing = as_utc(existing)
            value = as_utc(value)
        if value != existing:
            changes[field] = value

    ts = processor_time(transition.source_timestamp)
    if current is None or processor_time(current.processor_updated_at) != ts:
        changes["processor_updated_at"] = ts
    return changes


def _to_document(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in changes.items()}


# ============================================================================
# ENGINE
# ============================================================================

class SubscriptionTransitionEngine:
    def __init__(self, db, subscriptions, accounts, notifications=None):
        self.db = db
        self.subscriptions = subscriptions
        self.accounts = accounts
        self.notifications = notifications

    async def apply(self, account_id: str, transition: SubscriptionTransition) -> TransitionOutcome:
        """Apply one transition under compare-and-swap, then refresh derived entitlements."""
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = await self.subscriptions.get(account_id)
            stale = is_stale(current, transition)
            changes = plan_changes(current, transition)

            if current is None:
                record = SubscriptionRecord(account_id=account_id, **changes)
                if await self.subscriptions.insert_if_absent(record):
                    updated = record
                    break
            elif not changes:
                updated = current
                break
            else:
                changes["updated_at"] = utc_now()
                updated = await self.subscriptions.compare_and_swap(
                    account_id, current.version, _to_document(changes)
                )
                if updated is not None:
                    break

            logger.info(
                f"SUBSCRIPTION_CAS_CONFLICT account_id={account_id} "
                f"kind={transition.kind.value} attempt={attempt}"
            )
        else:
            raise ConcurrentUpdateError(
                f"Subscription for account {account_id} is being updated concurrently"
            )

        # A bare timestamp bump is bookkeeping, not a state change
        changed = bool(changes.keys() - BOOKKEEPING_FIELDS)
        snapshot = resolve(updated)
        await self.accounts.update_cached_entitlement(
            account_id, snapshot.plan, updated.version, updated.processor_customer_id
        )

        if stale:
            logger.info(
                f"SUBSCRIPTION_TRANSITION_STALE account_id={account_id} kind={transition.kind.value} "
                f"source_ts={as_utc(transition.source_timestamp).isoformat()}"
            )
            await create_audit_log(
                self.db,
                AuditAction.SUBSCRIPTION_TRANSITION_STALE,
                account_id=account_id,
                metadata={
                    "kind": transition.kind.value,
                    "source_timestamp": as_utc(transition.source_timestamp).isoformat(),
                    "backfilled": sorted(changes.keys() - BOOKKEEPING_FIELDS),
                },
            )
        elif changed:
            logger.info(
                f"SUBSCRIPTION_TRANSITION_APPLIED account_id={account_id} kind={transition.kind.value} "
                f"status={updated.status.value} plan={updated.plan.value}"
            )
            await create_audit_log(
                self.db,
                AuditAction.SUBSCRIPTION_TRANSITION_APPLIED,
                account_id=account_id,
                metadata={"kind": transition.kind.value},
                before_state=_audit_state(current),
                after_state=_audit_state(updated),
            )

        event_type = lifecycle_event_type(current, updated)
        if event_type and self.notifications is not None:
            self.notifications.subscription_changed(event_type, updated, snapshot)

        return TransitionOutcome(
            record=updated,
            previous=current,
            snapshot=snapshot,
            changed=changed,
            stale=stale,
        )


def _audit_state(record: Optional[SubscriptionRecord]) -> Dict[str, Any]:
    if record is None:
        return {"status": SubscriptionStatus.NONE.value, "plan": Plan.FREE.value}
    return {
        "status": record.status.value,
        "plan": record.plan.value,
        "cancel_at_period_end": record.cancel_at_period_end,
        "processor_subscription_id": record.processor_subscription_id,
    }
