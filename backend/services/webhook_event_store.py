"""Stripe webhook idempotency markers.

A marker is written only after an event has been fully applied, so a delivery
abandoned mid-way (timeout, crash, lost CAS race) is reapplied on redelivery.
"""
import logging
from typing import Optional

from pymongo.errors import DuplicateKeyError

from models import WebhookEventRecord

logger = logging.getLogger(__name__)


class WebhookEventStore:
    def __init__(self, db):
        self.collection = db.webhook_events

    async def is_processed(self, event_id: str) -> bool:
        existing = await self.collection.find_one({"event_id": event_id}, {"_id": 0, "event_id": 1})
        return existing is not None

    async def mark_processed(
        self,
        event_id: str,
        event_type: str,
        account_id: Optional[str] = None,
        outcome: str = "applied",
    ) -> None:
        record = WebhookEventRecord(
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            outcome=outcome,
        )
        try:
            await self.collection.insert_one(record.model_dump(mode="python"))
        except DuplicateKeyError:
            # A concurrent duplicate delivery finished first; transitions are idempotent
            logger.info(f"Event {event_id} marker already present (concurrent delivery)")
