from pydantic import AliasChoices, BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive datetimes (as returned by some Mongo clients) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    NONE = "none"  # No subscription record exists

class WebhookEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    UNKNOWN = "unknown"

class AuditAction(str, Enum):
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    SUBSCRIPTION_TRANSITION_APPLIED = "SUBSCRIPTION_TRANSITION_APPLIED"
    SUBSCRIPTION_TRANSITION_STALE = "SUBSCRIPTION_TRANSITION_STALE"
    INVOICE_PAYMENT_SUCCEEDED = "INVOICE_PAYMENT_SUCCEEDED"
    SUBSCRIPTION_SYNCED = "SUBSCRIPTION_SYNCED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"

# Plans that may go through checkout (free never does)
PURCHASABLE_PLANS = frozenset({Plan.PRO, Plan.ENTERPRISE})

# Statuses that make a subscription "active" for entitlement purposes
ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


# ============================================================================
# PERSISTED DOCUMENTS
# ============================================================================

class Account(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str  # Normalized (lowercase, trimmed); unique
    display_name: Optional[str] = None
    cached_plan: Plan = Plan.FREE
    cached_version: int = 0  # Subscription record version cached_plan was derived from
    processor_customer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SubscriptionRecord(BaseModel):
    """Last-known Stripe state for one account. Never hard-deleted."""
    model_config = ConfigDict(extra="ignore")

    account_id: str
    processor_subscription_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    plan: Plan = Plan.FREE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    processor_updated_at: Optional[datetime] = None  # Timestamp of the newest applied processor state
    version: int = 1  # Compare-and-swap guard
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class WebhookEventRecord(BaseModel):
    """Idempotency marker - written only after an event is fully applied."""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    event_type: str
    account_id: Optional[str] = None
    outcome: str = "applied"
    processed_at: datetime = Field(default_factory=utc_now)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    account_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)


# ============================================================================
# ENTITLEMENTS (derived, never persisted)
# ============================================================================

class PlanFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_documents: int  # -1 = unlimited
    max_storage_mb: int  # -1 = unlimited
    advanced_analytics: bool
    priority_support: bool
    custom_branding: bool
    api_access: bool
    team_collaboration: bool


class EntitlementSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: Plan
    active: bool
    status: SubscriptionStatus
    features: PlanFeatures
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    pending: bool = False  # Sync found no Stripe customer yet (webhook not received)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class CheckoutRequest(BaseModel):
    """Authenticated checkout. billingPeriod is accepted for older clients."""
    plan: str = Plan.PRO.value
    billing_interval: str = Field(
        default=BillingInterval.MONTHLY.value,
        validation_alias=AliasChoices("billingInterval", "billing_interval", "billingPeriod"),
    )


class PublicCheckoutRequest(CheckoutRequest):
    email: str = ""


# ============================================================================
# EXTERNAL REPRESENTATION
# ============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def account_to_public(account: Account) -> Dict[str, Any]:
    return {
        "id": account.account_id,
        "email": account.email,
        "displayName": account.display_name,
        "plan": account.cached_plan.value,
        "createdAt": _iso(account.created_at),
        "updatedAt": _iso(account.updated_at),
    }


def subscription_to_public(record: SubscriptionRecord) -> Dict[str, Any]:
    return {
        "accountId": record.account_id,
        "processorSubscriptionId": record.processor_subscription_id,
        "processorCustomerId": record.processor_customer_id,
        "status": record.status.value,
        "plan": record.plan.value,
        "currentPeriodStart": _iso(record.current_period_start),
        "currentPeriodEnd": _iso(record.current_period_end),
        "cancelAtPeriodEnd": record.cancel_at_period_end,
        "updatedAt": _iso(record.updated_at),
    }


def features_to_public(features: PlanFeatures) -> Dict[str, Any]:
    return {
        "maxDocuments": features.max_documents,
        "maxStorageMB": features.max_storage_mb,
        "advancedAnalytics": features.advanced_analytics,
        "prioritySupport": features.priority_support,
        "customBranding": features.custom_branding,
        "apiAccess": features.api_access,
        "teamCollaboration": features.team_collaboration,
    }


def snapshot_to_public(snapshot: EntitlementSnapshot) -> Dict[str, Any]:
    return {
        "plan": snapshot.plan.value,
        "active": snapshot.active,
        "status": snapshot.status.value,
        "features": features_to_public(snapshot.features),
        "cancelAtPeriodEnd": snapshot.cancel_at_period_end,
        "currentPeriodEnd": _iso(snapshot.current_period_end),
        "pending": snapshot.pending,
    }
