"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip database and scheduler startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from services.billing_context import build_billing_context
from services.notification_service import NotificationSink
from fakes import FakeDatabase, FakeGateway, WEBHOOK_SECRET

BILLING_ENV = {
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "STRIPE_PUBLISHABLE_KEY": "pk_test_123",
    "STRIPE_PRICE_PRO_MONTHLY": "price_pro_monthly",
    "STRIPE_PRICE_PRO_YEARLY": "price_pro_yearly",
    "STRIPE_PRICE_ENTERPRISE_MONTHLY": "price_ent_monthly",
    "STRIPE_PRICE_ENTERPRISE_YEARLY": "price_ent_yearly",
    "WEB_APP_URL": "https://app.example.com",
}

UNSET_ENV = ("STRIPE_API_KEY", "NOTIFICATION_WEBHOOK_URL", "ENVIRONMENT")


@pytest.fixture
def billing_env(monkeypatch):
    """Fully configured billing."""
    for key in UNSET_ENV:
        monkeypatch.delenv(key, raising=False)
    for key, value in BILLING_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def no_billing_env(monkeypatch):
    """No Stripe credentials at all."""
    for key in tuple(BILLING_ENV) + UNSET_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifications():
    return MagicMock(spec=NotificationSink)


@pytest.fixture
def billing(db, gateway, notifications):
    return build_billing_context(db, gateway=gateway, notifications=notifications)


@pytest.fixture
def client(billing):
    """TestClient for server:app with in-memory billing services injected."""
    from server import app
    app.state.billing = billing
    try:
        yield TestClient(app)
    finally:
        del app.state.billing

