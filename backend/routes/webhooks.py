"""Webhook Routes - Stripe webhook endpoint.

POST /api/webhook - raw body + Stripe-Signature header

Responses:
- 200: applied, duplicate, ignored or recorded (Stripe stops retrying)
- 400: signature or payload rejected (never applied)
- 500: processing failed (Stripe redelivers)
- 503: processing timed out, or no signing secret in production (Stripe redelivers)
"""
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
import logging

from errors import ConfigurationError, SignatureError, ValidationError, WebhookProcessingTimeout
from services.billing_context import BillingContext, get_billing_context

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["webhooks"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    signature: str = Header(None),
    billing: BillingContext = Depends(get_billing_context),
):
    """Handle Stripe webhooks. The body is read as raw bytes for signature verification."""
    payload = await request.body()
    try:
        result = await billing.webhooks.process_webhook(
            payload=payload,
            signature=stripe_signature or signature,
        )
    except (ConfigurationError, SignatureError, ValidationError, WebhookProcessingTimeout):
        raise
    except Exception:
        # Already logged with event context; a non-2xx makes Stripe redeliver
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Webhook processing failed", "retryable": True},
        )

    return {"received": True, "outcome": result["outcome"], "event_id": result.get("event_id")}
