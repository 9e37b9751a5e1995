"""Stripe Service - checkout sessions, cancellation, billing history and invoice PDFs.

Checkout never writes a subscription record. The account id and plan/interval
ride along as session (and subscription) metadata; the webhook ingestor reads
them back when checkout.session.completed arrives.
"""
import logging
from typing import Any, Dict, List, Optional

import config
from errors import ConfigurationError, NotFound, ValidationError
from models import (
    Account,
    AuditAction,
    BillingInterval,
    Plan,
    PURCHASABLE_PLANS,
    as_utc,
)
from services.subscription_transitions import from_epoch, stripe_id, subscription_periods
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

INVOICE_HISTORY_LIMIT = 50


def parse_checkout_plan(value: Optional[str]) -> Plan:
    try:
        plan = Plan((value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid plan: {value!r}")
    if plan not in PURCHASABLE_PLANS:
        raise ValidationError("The free plan does not require checkout")
    return plan


def parse_billing_interval(value: Optional[str]) -> BillingInterval:
    try:
        return BillingInterval((value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid billing interval: {value!r}")


def _iso_epoch(value: Any) -> Optional[str]:
    dt = from_epoch(value)
    return dt.isoformat() if dt else None


def format_invoice(invoice: Dict[str, Any]) -> Dict[str, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    first_line = lines[0] if lines else {}
    is_subscription = bool(invoice.get("subscription")) or bool(
        (invoice.get("parent") or {}).get("subscription_details")
    )
    return {
        "id": invoice.get("id"),
        "type": "subscription" if is_subscription else "one-time",
        "status": invoice.get("status"),
        "amount": (invoice.get("amount_paid") or 0) / 100,
        "currency": (invoice.get("currency") or "").upper(),
        "date": _iso_epoch(invoice.get("created")),
        "periodStart": _iso_epoch(invoice.get("period_start")),
        "periodEnd": _iso_epoch(invoice.get("period_end")),
        "description": invoice.get("description") or first_line.get("description") or "Subscription payment",
        "invoiceUrl": invoice.get("hosted_invoice_url"),
        "invoicePdf": invoice.get("invoice_pdf"),
        "billingReason": invoice.get("billing_reason"),
    }


class StripeService:
    """Checkout orchestrator plus the other user-initiated Stripe calls."""

    def __init__(self, db, gateway, accounts, subscriptions, notifications=None):
        self.db = db
        self.gateway = gateway
        self.accounts = accounts
        self.subscriptions = subscriptions
        self.notifications = notifications

    async def create_checkout_session(
        self,
        plan: str,
        billing_interval: str,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Create a hosted Stripe checkout session.

        Exactly one of account_id (authenticated) or email (public checkout) identifies
        the account; an unknown email creates the account.

        Returns:
            {"sessionId", "redirectUrl"}
        """
        plan_value = parse_checkout_plan(plan)
        interval = parse_billing_interval(billing_interval)

        if not config.billing_enabled():
            raise ConfigurationError("Billing is not configured")
        price_id = config.get_price_id(plan_value.value, interval.value)
        if not price_id:
            logger.error(f"No Stripe price configured for plan={plan_value.value} interval={interval.value}")
            raise ConfigurationError(f"Billing is not available for {plan_value.value} ({interval.value})")

        account = await self._resolve_checkout_account(account_id, email)

        metadata = {
            "account_id": account.account_id,
            "plan": plan_value.value,
            "billing_interval": interval.value,
        }
        web_app_url = config.get_web_app_url()
        session = await self.gateway.create_checkout_session(
            price_id=price_id,
            success_url=f"{web_app_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{web_app_url}/pricing",
            metadata=metadata,
            customer_id=account.processor_customer_id,
            customer_email=None if account.processor_customer_id else account.email,
        )

        await create_audit_log(
            self.db,
            AuditAction.CHECKOUT_SESSION_CREATED,
            account_id=account.account_id,
            metadata={
                "session_id": session.get("id"),
                "plan": plan_value.value,
                "billing_interval": interval.value,
            },
        )
        logger.info(
            f"Checkout session created: {session.get('id')} for account {account.account_id} "
            f"({plan_value.value}/{interval.value})"
        )
        return {"sessionId": session.get("id"), "redirectUrl": session.get("url")}

    async def _resolve_checkout_account(
        self,
        account_id: Optional[str],
        email: Optional[str],
    ) -> Account:
        if account_id:
            account = await self.accounts.get(account_id)
            if account is None:
                raise NotFound("Account not found")
            return account

        if not email:
            raise ValidationError("Valid email address is required")

        account, created = await self.accounts.find_or_create_by_email(email)
        if created:
            await create_audit_log(
                self.db,
                AuditAction.ACCOUNT_CREATED,
                account_id=account.account_id,
                metadata={"source": "public_checkout"},
            )
            if self.notifications is not None:
                self.notifications.account_created(account)
        return account

    async def cancel_subscription(self, account_id: str) -> Dict[str, Any]:
        """Ask Stripe to cancel at period end.

        The local record is not touched here; customer.subscription.updated (or a
        sync) carries the new state back through the transition engine.
        """
        if not config.billing_enabled():
            raise ConfigurationError("Billing is not configured")

        record = await self.subscriptions.get(account_id)
        if record is None or not record.processor_subscription_id:
            raise NotFound("No active subscription found")

        subscription = await self.gateway.cancel_at_period_end(record.processor_subscription_id)
        _, period_end = subscription_periods(subscription)

        await create_audit_log(
            self.db,
            AuditAction.CANCELLATION_REQUESTED,
            account_id=account_id,
            metadata={"subscription_id": record.processor_subscription_id},
        )
        logger.info(f"Cancellation at period end requested for account {account_id}")

        return {
            "success": True,
            "status": subscription.get("status"),
            "cancelAtPeriodEnd": bool(subscription.get("cancel_at_period_end")),
            "currentPeriodEnd": as_utc(period_end).isoformat() if period_end else None,
        }

    async def get_subscription_history(self, account_id: str) -> List[Dict[str, Any]]:
        """Stripe invoices for the account, newest first. Empty if no Stripe customer yet."""
        if not config.billing_enabled():
            raise ConfigurationError("Billing is not configured")

        customer_id = await self._customer_id_for(account_id)
        if not customer_id:
            return []

        invoices = await self.gateway.list_invoices(customer_id, limit=INVOICE_HISTORY_LIMIT)
        history = [format_invoice(inv) for inv in invoices]
        history.sort(key=lambda item: item["date"] or "", reverse=True)
        return history

    async def get_invoice_pdf(self, account_id: str, invoice_id: str) -> bytes:
        """PDF bytes of one of the account's invoices, proxied from Stripe."""
        if not config.billing_enabled():
            raise ConfigurationError("Billing is not configured")

        customer_id = await self._customer_id_for(account_id)
        if not customer_id:
            raise NotFound("Invoice not found")
        invoice = await self.gateway.retrieve_invoice(invoice_id)
        # Never hand out another customer's invoice
        if stripe_id(invoice.get("customer")) != customer_id:
            raise NotFound("Invoice not found")

        pdf_url = invoice.get("invoice_pdf")
        if not pdf_url:
            raise NotFound("Invoice PDF not available")
        return await self.gateway.download_invoice_pdf(pdf_url)

    async def _customer_id_for(self, account_id: str) -> Optional[str]:
        account = await self.accounts.get(account_id)
        if account is None:
            raise NotFound("Account not found")
        if account.processor_customer_id:
            return account.processor_customer_id
        record = await self.subscriptions.get(account_id)
        return record.processor_customer_id if record else None
