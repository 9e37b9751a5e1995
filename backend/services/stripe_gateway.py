"""Stripe gateway - the only module that talks to the Stripe SDK.

The SDK is synchronous, so each call runs in a worker thread under a deadline
(STRIPE_API_TIMEOUT_SECONDS). Responses come back as plain dicts. SDK errors are
translated here into billing errors so callers never see Stripe internals:

- connection errors, rate limits, 5xx, deadline expiry -> ProcessorUnavailable
- invalid request (missing resource)                   -> NotFound
- invalid request (anything else), card errors         -> ValidationError
- authentication failure / missing key                 -> ConfigurationError
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import stripe

import config
from errors import (
    ConfigurationError,
    NotFound,
    ProcessorUnavailable,
    SignatureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (recursively). Plain dicts pass through."""
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    if isinstance(obj, dict):
        return obj
    raise TypeError(f"Unexpected Stripe response type: {type(obj).__name__}")


def _translate(e: stripe.StripeError, operation: str) -> Exception:
    user_message = getattr(e, "user_message", None) or "Payment processor rejected the request"
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProcessorUnavailable("Payment processor is temporarily unavailable")
    if isinstance(e, stripe.AuthenticationError):
        logger.error(f"Stripe authentication failed during {operation}")
        return ConfigurationError("Billing is not available right now")
    if isinstance(e, stripe.InvalidRequestError):
        if getattr(e, "code", None) == "resource_missing":
            return NotFound(user_message)
        return ValidationError(user_message)
    if isinstance(e, stripe.CardError):
        return ValidationError(user_message)
    if (getattr(e, "http_status", None) or 500) >= 500:
        return ProcessorUnavailable("Payment processor is temporarily unavailable")
    return ValidationError(user_message)


class StripeGateway:
    """Async facade over the Stripe SDK. The secret key is read per call."""

    def _api_key(self) -> str:
        key = config.get_stripe_secret_key()
        if not key:
            raise ConfigurationError("Billing is not configured")
        return key

    async def _call(self, operation: str, fn: Callable, *args, **kwargs) -> Any:
        kwargs["api_key"] = self._api_key()
        timeout = config.get_stripe_timeout_seconds()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {timeout}s")
            raise ProcessorUnavailable("Payment processor did not respond in time")
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {operation} failed: type={type(e).__name__} "
                f"http_status={getattr(e, 'http_status', None)} code={getattr(e, 'code', None)}"
            )
            raise _translate(e, operation) from e

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "client_reference_id": metadata.get("account_id"),
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = await self._call("checkout.Session.create", stripe.checkout.Session.create, **params)
        return _as_dict(session)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "Subscription.retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return _as_dict(subscription)

    async def latest_subscription_for_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Most recent subscription in any status, or None if the customer never had one."""
        result = _as_dict(await self._call(
            "Subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=1,
        ))
        data = result.get("data") or []
        return data[0] if data else None

    async def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "Subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return _as_dict(subscription)

    async def list_invoices(self, customer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        result = _as_dict(await self._call(
            "Invoice.list",
            stripe.Invoice.list,
            customer=customer_id,
            limit=limit,
        ))
        return result.get("data") or []

    async def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        invoice = await self._call("Invoice.retrieve", stripe.Invoice.retrieve, invoice_id)
        return _as_dict(invoice)

    async def download_invoice_pdf(self, url: str) -> bytes:
        """Fetch the hosted invoice PDF. The URL is pre-signed by Stripe, no API key is sent."""
        timeout = aiohttp.ClientTimeout(total=config.get_stripe_timeout_seconds())
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error(f"Invoice PDF download failed: HTTP {response.status}")
                        raise ProcessorUnavailable("Invoice PDF could not be fetched")
                    return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Invoice PDF download failed: {e}")
            raise ProcessorUnavailable("Invoice PDF could not be fetched")

    def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        secret: Optional[str],
    ) -> Dict[str, Any]:
        """Verify the Stripe-Signature header over the raw bytes and parse the event.

        With no secret configured verification is skipped outside production. In
        production the delivery is refused as unconfigured so Stripe keeps retrying.
        """
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Webhook payload is not valid UTF-8")

        if secret:
            if not signature:
                raise SignatureError("Missing webhook signature")
            try:
                stripe.WebhookSignature.verify_header(
                    text, signature, secret, WEBHOOK_TOLERANCE_SECONDS
                )
            except stripe.SignatureVerificationError:
                raise SignatureError("Invalid webhook signature")
        elif config.is_production():
            logger.error("STRIPE_WEBHOOK_SECRET not set in production - refusing unsigned webhook")
            raise ConfigurationError("Webhook signing secret is not configured")
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set - webhook signature NOT verified")

        try:
            event = json.loads(text)
        except json.JSONDecodeError:
            raise ValidationError("Webhook payload is not valid JSON")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload is not a Stripe event")
        return event
