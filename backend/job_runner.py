"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_subscription_reconciliation(billing):
    """Periodic sweep: re-sync paying subscriptions that have not heard from Stripe recently."""
    try:
        return await billing.reconciliation.reconcile_stale_subscriptions()
    except Exception as e:
        logger.error(f"Subscription reconciliation job error: {e}")
        return {"message": f"Subscription reconciliation failed: {e}", "count": 0}
