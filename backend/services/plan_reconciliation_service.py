"""Reconciliation sync - pull the latest subscription from Stripe and apply it.

Used on demand (POST /subscription/sync, e.g. straight after the checkout
redirect, before the webhook has necessarily arrived) and by the periodic sweep
for paying records that have not heard from Stripe in a while.

Sync applies exactly the same transition builders as the webhook ingestor, so
both paths converge on the same record state.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

import config
from errors import BillingError, ConfigurationError, NotFound
from models import AuditAction, EntitlementSnapshot, WebhookEventKind, utc_now
from services.feature_entitlement import resolve
from services.subscription_transitions import (
    subscription_deleted_transition,
    subscription_state_transition,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100


class ReconciliationService:
    def __init__(self, db, gateway, accounts, subscriptions, engine):
        self.db = db
        self.gateway = gateway
        self.accounts = accounts
        self.subscriptions = subscriptions
        self.engine = engine

    async def sync(self, account_id: str) -> EntitlementSnapshot:
        """
        Reconcile one account against Stripe.

        - No Stripe customer yet: current snapshot with pending=True (webhook not in yet).
        - No subscription at Stripe: same as subscription_deleted.
        - Otherwise: same as subscription_updated with the freshest Stripe state.
        """
        if not config.billing_enabled():
            raise ConfigurationError("Billing is not configured")

        account = await self.accounts.get(account_id)
        if account is None:
            raise NotFound("Account not found")

        record = await self.subscriptions.get(account_id)
        customer_id = account.processor_customer_id or (record.processor_customer_id if record else None)
        if not customer_id:
            logger.info(f"Sync for {account_id}: no Stripe customer yet, returning pending snapshot")
            return resolve(record, pending=True)

        # Taken before the fetch: any event created after this instant may be newer
        fetched_at = utc_now()
        subscription = await self.gateway.latest_subscription_for_customer(customer_id)

        if subscription is None:
            logger.info(f"Sync for {account_id}: customer {customer_id} has no subscriptions")
            transition = subscription_deleted_transition(fetched_at)
        else:
            transition = subscription_state_transition(
                subscription, fetched_at, kind=WebhookEventKind.SUBSCRIPTION_UPDATED
            )

        outcome = await self.engine.apply(account_id, transition)

        await create_audit_log(
            self.db,
            AuditAction.SUBSCRIPTION_SYNCED,
            account_id=account_id,
            metadata={
                "subscription_id": subscription.get("id") if subscription else None,
                "status": outcome.record.status.value,
                "plan": outcome.record.plan.value,
                "changed": outcome.changed,
            },
        )
        return outcome.snapshot

    async def reconcile_stale_subscriptions(self, stale_after: Optional[timedelta] = None) -> dict:
        """Sync every paying record whose updated_at is older than stale_after.

        Per-account failures are logged and skipped.
        """
        if not config.billing_enabled():
            logger.info("Reconciliation sweep skipped: billing not configured")
            return {"message": "Billing not configured", "count": 0, "failed": 0}

        if stale_after is None:
            stale_after = timedelta(hours=config.get_reconciliation_stale_hours())
        cutoff = utc_now() - stale_after

        records = await self.subscriptions.find_due_for_reconciliation(cutoff, limit=SWEEP_BATCH_SIZE)
        synced = 0
        failed = 0
        for record in records:
            try:
                await self.sync(record.account_id)
                synced += 1
            except BillingError as e:
                failed += 1
                logger.warning(f"Reconciliation for {record.account_id} failed: {e.error_code} {e.message}")
            except Exception as e:
                failed += 1
                logger.error(f"Reconciliation for {record.account_id} failed: {e}")

        logger.info(f"Reconciliation sweep: {synced} synced, {failed} failed of {len(records)} due")
        return {"message": f"Reconciled {synced} subscriptions", "count": synced, "failed": failed}
