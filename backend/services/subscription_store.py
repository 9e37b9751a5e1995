"""Subscription Record Store - last-known Stripe state per account.

Writes go through two primitives only:
- insert_if_absent: first record for an account (unique account_id index)
- compare_and_swap: conditional update keyed on the record's version

Callers (the transition engine) own the read-modify-write retry loop.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models import SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


def record_to_document(record: SubscriptionRecord) -> Dict[str, Any]:
    doc = record.model_dump(mode="python")
    doc["status"] = record.status.value
    doc["plan"] = record.plan.value
    return doc


class SubscriptionStore:
    def __init__(self, db):
        self.collection = db.subscriptions

    async def get(self, account_id: str) -> Optional[SubscriptionRecord]:
        doc = await self.collection.find_one({"account_id": account_id}, {"_id": 0})
        return SubscriptionRecord.model_validate(doc) if doc else None

    async def get_by_processor_subscription_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        doc = await self.collection.find_one(
            {"processor_subscription_id": subscription_id}, {"_id": 0}
        )
        return SubscriptionRecord.model_validate(doc) if doc else None

    async def get_by_processor_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        doc = await self.collection.find_one(
            {"processor_customer_id": customer_id}, {"_id": 0}
        )
        return SubscriptionRecord.model_validate(doc) if doc else None

    async def insert_if_absent(self, record: SubscriptionRecord) -> bool:
        """Insert the first record for an account. False if another writer got there first."""
        try:
            await self.collection.insert_one(record_to_document(record))
            return True
        except DuplicateKeyError:
            logger.debug("Subscription record for %s already exists", record.account_id)
            return False

    async def compare_and_swap(
        self,
        account_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Optional[SubscriptionRecord]:
        """Apply changes only if the stored version still matches. None means a concurrent writer won."""
        doc = await self.collection.find_one_and_update(
            {"account_id": account_id, "version": expected_version},
            {"$set": changes, "$inc": {"version": 1}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return SubscriptionRecord.model_validate(doc) if doc else None

    async def find_due_for_reconciliation(
        self,
        updated_before: datetime,
        limit: int = 100,
    ) -> List[SubscriptionRecord]:
        """Records in a paying state that have not heard from Stripe since updated_before."""
        cursor = self.collection.find(
            {
                "status": {"$in": [
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.TRIALING.value,
                    SubscriptionStatus.PAST_DUE.value,
                ]},
                "updated_at": {"$lt": updated_before},
            },
            {"_id": 0},
        ).sort("updated_at", 1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [SubscriptionRecord.model_validate(d) for d in docs]
