"""Wiring for the billing services.

The server lifespan builds one BillingContext from the connected database and
stores it on app.state; route handlers receive it through get_billing_context.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from services.account_store import AccountStore
from services.notification_service import NotificationSink
from services.plan_reconciliation_service import ReconciliationService
from services.stripe_gateway import StripeGateway
from services.stripe_service import StripeService
from services.stripe_webhook_service import StripeWebhookService
from services.subscription_store import SubscriptionStore
from services.subscription_transitions import SubscriptionTransitionEngine
from services.webhook_event_store import WebhookEventStore


@dataclass
class BillingContext:
    db: object
    accounts: AccountStore
    subscriptions: SubscriptionStore
    events: WebhookEventStore
    gateway: StripeGateway
    notifications: NotificationSink
    engine: SubscriptionTransitionEngine
    checkout: StripeService
    webhooks: StripeWebhookService
    reconciliation: ReconciliationService


def build_billing_context(
    db,
    gateway: Optional[StripeGateway] = None,
    notifications: Optional[NotificationSink] = None,
) -> BillingContext:
    gateway = gateway or StripeGateway()
    notifications = notifications or NotificationSink()
    accounts = AccountStore(db)
    subscriptions = SubscriptionStore(db)
    events = WebhookEventStore(db)
    engine = SubscriptionTransitionEngine(db, subscriptions, accounts, notifications)
    return BillingContext(
        db=db,
        accounts=accounts,
        subscriptions=subscriptions,
        events=events,
        gateway=gateway,
        notifications=notifications,
        engine=engine,
        checkout=StripeService(db, gateway, accounts, subscriptions, notifications),
        webhooks=StripeWebhookService(db, gateway, accounts, subscriptions, events, engine),
        reconciliation=ReconciliationService(db, gateway, accounts, subscriptions, engine),
    )


def get_billing_context(request: Request) -> BillingContext:
    context = getattr(request.app.state, "billing", None)
    if context is None:
        raise RuntimeError("Billing services are not initialized")
    return context
