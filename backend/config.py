"""Runtime configuration for the billing service.

Values are read from the environment on every call (after .env is loaded once)
so a missing Stripe key degrades billing to "unavailable" instead of failing at
import time, and tests can patch os.environ freely.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

DEFAULT_WEB_APP_URL = "http://localhost:3001"


def _str_env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _bool_env(name: str, default: bool = False) -> bool:
    raw = _str_env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _float_env(name: str, default: float) -> float:
    raw = _str_env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_environment() -> str:
    return _str_env("ENVIRONMENT", "development").lower()


def is_production() -> bool:
    return get_environment() == "production"


def get_stripe_secret_key() -> str:
    """Stripe secret key (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)."""
    return _str_env("STRIPE_SECRET_KEY") or _str_env("STRIPE_API_KEY")


def billing_enabled() -> bool:
    return bool(get_stripe_secret_key())


def get_webhook_secret() -> str:
    return _str_env("STRIPE_WEBHOOK_SECRET")


def get_publishable_key() -> str:
    return _str_env("STRIPE_PUBLISHABLE_KEY")


def get_price_id(plan: str, billing_interval: str) -> Optional[str]:
    """Stripe price id for plan + interval, e.g. STRIPE_PRICE_PRO_MONTHLY."""
    value = _str_env(f"STRIPE_PRICE_{plan.upper()}_{billing_interval.upper()}")
    return value or None


def get_stripe_timeout_seconds() -> float:
    return _float_env("STRIPE_API_TIMEOUT_SECONDS", 8.0)


def get_webhook_timeout_seconds() -> float:
    return _float_env("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", 10.0)


def get_web_app_url() -> str:
    return _str_env("WEB_APP_URL", DEFAULT_WEB_APP_URL).rstrip("/")


def get_notification_webhook_url() -> str:
    return _str_env("NOTIFICATION_WEBHOOK_URL").rstrip("/")


def reconciliation_enabled() -> bool:
    return _bool_env("RECONCILIATION_ENABLED", True)


def get_reconciliation_interval_minutes() -> float:
    return _float_env("RECONCILIATION_INTERVAL_MINUTES", 360.0)


def get_reconciliation_stale_hours() -> float:
    return _float_env("RECONCILIATION_STALE_HOURS", 24.0)
