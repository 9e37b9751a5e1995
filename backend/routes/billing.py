"""Billing Routes - checkout and subscription management.

Endpoints:
- POST /api/checkout - Checkout session for the authenticated account
- POST /api/checkout/public - Checkout session by email (creates the account if new)
- GET /api/subscription/status - Cached entitlement snapshot
- POST /api/subscription/sync - Pull latest state from Stripe, return refreshed snapshot
- POST /api/subscription/cancel - Cancel at period end (local state follows via webhook/sync)
- GET /api/subscription/history - Stripe invoices, newest first
- GET /api/subscription/invoice/{invoice_id} - Invoice PDF proxied from Stripe (inline)
- GET /api/subscription/plans - Plan table
- GET /api/subscription/publishable-key - Stripe publishable key for the frontend
- GET /api/account/profile - Account, subscription record and entitlements
- GET /api/account/activity - Billing audit trail for the account, newest first

Billing errors propagate to the BillingError handler in server.py.
"""
from fastapi import APIRouter, Depends, Path, Query, Response
import logging

import config
from errors import NotFound
from middleware import require_auth
from models import (
    CheckoutRequest,
    PublicCheckoutRequest,
    account_to_public,
    snapshot_to_public,
    subscription_to_public,
)
from services.billing_context import BillingContext, get_billing_context
from services.feature_entitlement import resolve
from services.plan_registry import get_all_plans
from utils.audit import get_audit_logs_for_account

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["billing"])


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    """Create a Stripe checkout session for the signed-in account."""
    return await billing.checkout.create_checkout_session(
        plan=body.plan,
        billing_interval=body.billing_interval,
        account_id=account_id,
    )


@router.post("/checkout/public")
async def create_public_checkout(
    body: PublicCheckoutRequest,
    billing: BillingContext = Depends(get_billing_context),
):
    """Create a checkout session from an email address alone."""
    return await billing.checkout.create_checkout_session(
        plan=body.plan,
        billing_interval=body.billing_interval,
        email=body.email,
    )


@router.get("/subscription/status")
async def get_subscription_status(
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    record = await billing.subscriptions.get(account_id)
    return snapshot_to_public(resolve(record))


@router.post("/subscription/sync")
async def sync_subscription(
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    snapshot = await billing.reconciliation.sync(account_id)
    return snapshot_to_public(snapshot)


@router.post("/subscription/cancel")
async def cancel_subscription(
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    return await billing.checkout.cancel_subscription(account_id)


@router.get("/subscription/history")
async def get_subscription_history(
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    history = await billing.checkout.get_subscription_history(account_id)
    return {"history": history}


@router.get("/subscription/invoice/{invoice_id}")
async def get_invoice_pdf(
    invoice_id: str = Path(..., pattern=r"^in_[A-Za-z0-9]+$"),
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    """Proxy the invoice PDF so the browser never fetches it cross-origin."""
    pdf = await billing.checkout.get_invoice_pdf(account_id, invoice_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="invoice-{invoice_id}.pdf"',
            "Cache-Control": "private, max-age=3600",
        },
    )

@router.get("/subscription/plans")
async def get_plans():
    return {"plans": get_all_plans()}


@router.get("/subscription/publishable-key")
async def get_publishable_key():
    return {"publishableKey": config.get_publishable_key()}


@router.get("/account/profile")
async def get_account_profile(
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    account = await billing.accounts.get(account_id)
    if account is None:
        raise NotFound("Account not found")
    record = await billing.subscriptions.get(account_id)
    return {
        "account": account_to_public(account),
        "subscription": subscription_to_public(record) if record else None,
        "entitlements": snapshot_to_public(resolve(record)),
    }


@router.get("/account/activity")
async def get_account_activity(
    limit: int = Query(50, ge=1, le=200),
    account_id: str = Depends(require_auth),
    billing: BillingContext = Depends(get_billing_context),
):
    logs = await get_audit_logs_for_account(billing.db, account_id, limit=limit)
    return {"activity": logs}
