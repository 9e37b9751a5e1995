"""Stripe Webhook Service - verified, deduplicated, idempotent event ingestion.

Key Principles:
1. Signature verification: events are verified against STRIPE_WEBHOOK_SECRET over
   the exact delivered bytes (skipped with a warning only when no secret is set)
2. Idempotency: an event id is applied at most once; the marker is written only
   after the transition and entitlement refresh complete, so a delivery abandoned
   mid-way (timeout, crash, lost CAS race) is reapplied on redelivery
3. One write path: every state change goes through SubscriptionTransitionEngine
4. Forward compatible: unknown event types are acknowledged and ignored

Events Handled:
- checkout.session.completed          -> checkout_completed
- customer.subscription.created       -> subscription_updated
- customer.subscription.updated       -> subscription_updated
- customer.subscription.deleted       -> subscription_deleted
- invoice.payment_failed              -> invoice_payment_failed
- invoice.paid / invoice.payment_succeeded -> invoice_payment_succeeded (audit only)
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import config
from errors import BillingError, SignatureError, WebhookProcessingTimeout
from models import Account, AuditAction, WebhookEventKind, utc_now
from services.subscription_transitions import (
    checkout_completed_transition,
    from_epoch,
    invoice_subscription_id,
    payment_failed_transition,
    stripe_id,
    subscription_deleted_transition,
    subscription_state_transition,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "checkout.session.completed": WebhookEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": WebhookEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": WebhookEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_failed": WebhookEventKind.INVOICE_PAYMENT_FAILED,
    "invoice.payment_succeeded": WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.paid": WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED,
}

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_RECORDED = "recorded"


def event_kind(event_type: Optional[str]) -> WebhookEventKind:
    return EVENT_KINDS.get(event_type or "", WebhookEventKind.UNKNOWN)


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "livemode": event.get("livemode"),
        "account_id": metadata.get("account_id"),
        "customer_id": stripe_id(obj.get("customer")),
        "subscription_id": obj.get("id") if obj.get("object") == "subscription" else stripe_id(obj.get("subscription")),
    }


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    details = invoice.get("subscription_details") or {}
    if details.get("metadata"):
        return details["metadata"]
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return parent_details.get("metadata") or {}


class StripeWebhookService:
    """Webhook ingestor. Collaborators are injected by the server lifespan."""

    def __init__(self, db, gateway, accounts, subscriptions, events, engine):
        self.db = db
        self.gateway = gateway
        self.accounts = accounts
        self.subscriptions = subscriptions
        self.events = events
        self.engine = engine

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify, dedupe and apply one delivery.

        Returns {"outcome", "event_id", "event_type", "account_id"} for any delivery that
        should be acknowledged. Raises SignatureError / ValidationError for rejected
        payloads and any other error (including WebhookProcessingTimeout) when the
        delivery must be retried.
        """
        try:
            event = self.gateway.verify_webhook(payload, signature, config.get_webhook_secret())
        except SignatureError:
            logger.error("WEBHOOK_SIGNATURE_INVALID (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)")
            raise

        event_id = event["id"]
        event_type = event["type"]
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s account_id=%s customer_id=%s subscription_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("account_id"), ctx.get("customer_id"), ctx.get("subscription_id"),
        )

        if await self.events.is_processed(event_id):
            logger.info("WEBHOOK_DUPLICATE event_id=%s event_type=%s", event_id, event_type)
            return {"outcome": OUTCOME_DUPLICATE, "event_id": event_id, "event_type": event_type, "account_id": None}

        timeout = config.get_webhook_timeout_seconds()
        try:
            result = await asyncio.wait_for(self._handle_event(event), timeout)
        except asyncio.TimeoutError:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=timeout after %ss",
                event_id, event_type, timeout,
            )
            raise WebhookProcessingTimeout(f"Webhook processing exceeded {timeout}s")
        except BillingError as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, e.error_code,
            )
            raise
        except Exception:
            logger.exception("WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s", event_id, event_type)
            raise

        # Only now is the event final
        await self.events.mark_processed(
            event_id, event_type, account_id=result.get("account_id"), outcome=result["outcome"]
        )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s outcome=%s account_id=%s",
            event_id, event_type, result["outcome"], result.get("account_id"),
        )
        return {"event_id": event_id, "event_type": event_type, **result}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict[str, Any]:
        """Route event to the handler for its kind."""
        kind = event_kind(event.get("type"))
        data = event.get("data", {}).get("object", {}) or {}
        source_timestamp = from_epoch(event.get("created")) or utc_now()

        handlers = {
            WebhookEventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            WebhookEventKind.INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
            WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
        }
        handler = handlers.get(kind)
        if handler is None:
            logger.info(f"Ignoring unhandled event type: {event.get('type')}")
            return {"outcome": OUTCOME_IGNORED, "account_id": None}
        return await handler(data, source_timestamp)

    async def _handle_checkout_completed(self, session: Dict, source_timestamp) -> Dict[str, Any]:
        """checkout.session.completed - first link between an account and its subscription."""
        if session.get("mode") and session.get("mode") != "subscription":
            logger.info(f"Ignoring checkout mode: {session.get('mode')}")
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        metadata = session.get("metadata") or {}
        account_id = metadata.get("account_id") or session.get("client_reference_id")
        account = await self.accounts.get(account_id) if account_id else None
        if account is None:
            logger.error(
                f"checkout.session.completed {session.get('id')} references unknown account {account_id!r}"
            )
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        subscription = session.get("subscription")
        if isinstance(subscription, str) and config.billing_enabled():
            subscription = await self.gateway.retrieve_subscription(subscription)
        elif not isinstance(subscription, dict):
            subscription = None

        transition = checkout_completed_transition(session, source_timestamp, subscription)
        await self.engine.apply(account.account_id, transition)
        return {"outcome": OUTCOME_APPLIED, "account_id": account.account_id}

    async def _handle_subscription_updated(self, subscription: Dict, source_timestamp) -> Dict[str, Any]:
        account = await self._resolve_account(
            subscription.get("metadata") or {},
            subscription.get("id"),
            stripe_id(subscription.get("customer")),
        )
        if account is None:
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        await self.engine.apply(
            account.account_id, subscription_state_transition(subscription, source_timestamp)
        )
        return {"outcome": OUTCOME_APPLIED, "account_id": account.account_id}

    async def _handle_subscription_deleted(self, subscription: Dict, source_timestamp) -> Dict[str, Any]:
        account = await self._resolve_account(
            subscription.get("metadata") or {},
            subscription.get("id"),
            stripe_id(subscription.get("customer")),
        )
        if account is None:
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        await self.engine.apply(
            account.account_id, subscription_deleted_transition(source_timestamp, subscription)
        )
        return {"outcome": OUTCOME_APPLIED, "account_id": account.account_id}

    async def _handle_payment_failed(self, invoice: Dict, source_timestamp) -> Dict[str, Any]:
        """invoice.payment_failed - past_due, plan untouched (grace period)."""
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Ignoring payment failure for non-subscription invoice {invoice.get('id')}")
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        account = await self._resolve_account(
            _invoice_metadata(invoice), subscription_id, stripe_id(invoice.get("customer"))
        )
        if account is None:
            return {"outcome": OUTCOME_IGNORED, "account_id": None}

        await self.engine.apply(account.account_id, payment_failed_transition(invoice, source_timestamp))
        return {"outcome": OUTCOME_APPLIED, "account_id": account.account_id}

    async def _handle_payment_succeeded(self, invoice: Dict, source_timestamp) -> Dict[str, Any]:
        """invoice.paid - no state transition; audit trail only."""
        account = await self._resolve_account(
            _invoice_metadata(invoice),
            invoice_subscription_id(invoice),
            stripe_id(invoice.get("customer")),
        )
        account_id = account.account_id if account else None
        await create_audit_log(
            self.db,
            AuditAction.INVOICE_PAYMENT_SUCCEEDED,
            account_id=account_id,
            metadata={
                "invoice_id": invoice.get("id"),
                "amount_paid": invoice.get("amount_paid"),
                "currency": invoice.get("currency"),
                "billing_reason": invoice.get("billing_reason"),
            },
        )
        return {"outcome": OUTCOME_RECORDED, "account_id": account_id}

    # =========================================================================
    # Account resolution
    # =========================================================================

    async def _resolve_account(
        self,
        metadata: Dict[str, Any],
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[Account]:
        """metadata.account_id, then subscription id, then customer id."""
        account_id = metadata.get("account_id")
        if account_id:
            account = await self.accounts.get(account_id)
            if account:
                return account
            logger.warning(f"Event metadata references unknown account {account_id}")

        if subscription_id:
            record = await self.subscriptions.get_by_processor_subscription_id(subscription_id)
            if record:
                account = await self.accounts.get(record.account_id)
                if account:
                    return account

        if customer_id:
            account = await self.accounts.get_by_processor_customer_id(customer_id)
            if account:
                return account
            record = await self.subscriptions.get_by_processor_customer_id(customer_id)
            if record:
                account = await self.accounts.get(record.account_id)
                if account:
                    return account

        logger.warning(
            f"No account for event (subscription_id={subscription_id}, customer_id={customer_id}) - ignoring"
        )
        return None
