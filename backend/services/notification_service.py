"""Notification Sink - fire-and-forget events to the workflow-automation endpoint.

Events:
- user-onboarding: a checkout created a new account
- subscription-lifecycle: status or plan changed (eventType created/updated/renewed/canceled/past_due)

Payloads are POSTed as JSON to {NOTIFICATION_WEBHOOK_URL}/{event}. Delivery is best
effort: every failure is logged and swallowed, and callers never await the send.
"""
import aiohttp
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import config
from models import Account, EntitlementSnapshot, SubscriptionRecord, SubscriptionStatus, utc_now

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 5

USER_ONBOARDING = "user-onboarding"
SUBSCRIPTION_LIFECYCLE = "subscription-lifecycle"


class NotificationSink:
    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url if base_url is not None else config.get_notification_webhook_url()).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)
        # Strong references so pending sends are not garbage collected
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def notify(self, event_name: str, payload: Dict[str, Any]) -> bool:
        """POST one event. Returns True on a 2xx response; never raises."""
        if not self.enabled:
            logger.debug(f"Notification sink disabled, skipping {event_name}")
            return False

        url = f"{self.base_url}/{event_name}"
        body = {"event": event_name, "timestamp": utc_now().isoformat(), **payload}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url,
                    data=json.dumps(body, default=str),
                    headers={"Content-Type": "application/json"},
                ) as response:
                    if 200 <= response.status < 300:
                        logger.info(f"Notification {event_name} delivered: {response.status}")
                        return True
                    logger.warning(f"Notification {event_name} failed: HTTP {response.status}")
        except aiohttp.ClientError as e:
            logger.error(f"Notification {event_name} connection error: {e}")
        except asyncio.TimeoutError:
            logger.error(f"Notification {event_name} timed out after {REQUEST_TIMEOUT_SECONDS}s")
        except Exception as e:
            logger.error(f"Notification {event_name} unexpected error: {e}")
        return False

    def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Schedule notify() in the background and return immediately."""
        if not self.enabled:
            logger.debug(f"Notification sink disabled, skipping {event_name}")
            return
        task = asyncio.create_task(self.notify(event_name, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def account_created(self, account: Account) -> None:
        self.dispatch(USER_ONBOARDING, {
            "userId": account.account_id,
            "email": account.email,
            "name": account.display_name,
            "subscriptionStatus": account.cached_plan.value,
            "createdAt": account.created_at.isoformat(),
        })

    def subscription_changed(
        self,
        event_type: str,
        record: SubscriptionRecord,
        snapshot: EntitlementSnapshot,
    ) -> None:
        self.dispatch(SUBSCRIPTION_LIFECYCLE, {
            "eventType": event_type,
            "userId": record.account_id,
            "subscriptionId": record.processor_subscription_id,
            "status": record.status.value,
            "plan": snapshot.plan.value,
            "active": snapshot.active,
            "cancelAtPeriodEnd": record.cancel_at_period_end,
            "currentPeriodEnd": record.current_period_end.isoformat() if record.current_period_end else None,
        })


def lifecycle_event_type(
    previous: Optional[SubscriptionRecord],
    current: SubscriptionRecord,
) -> Optional[str]:
    """Lifecycle eventType for a status/plan change, or None when nothing a subscriber cares about moved."""
    if previous is None:
        return "created"
    if previous.status == current.status and previous.plan == current.plan:
        return None
    if current.status == SubscriptionStatus.CANCELED:
        return "canceled"
    if current.status == SubscriptionStatus.PAST_DUE:
        return "past_due"
    if previous.status == SubscriptionStatus.PAST_DUE and current.status == SubscriptionStatus.ACTIVE:
        return "renewed"
    return "updated"
