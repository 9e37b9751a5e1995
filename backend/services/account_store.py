"""Account Store - durable account profile + cached entitlement fields.

Find-or-create by email is atomic: an upsert against the unique email index.
When two callers race on a brand-new email, MongoDB lets one upsert win and
rejects the other with DuplicateKeyError; the loser re-fetches the winner's row.
"""
import logging
from typing import Optional, Tuple

from email_validator import validate_email, EmailNotValidError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import ValidationError
from models import Account, Plan, utc_now

logger = logging.getLogger(__name__)

# Upsert can lose a race more than once only under pathological contention
MAX_UPSERT_ATTEMPTS = 3


def normalize_email(email: Optional[str]) -> str:
    """Lowercase + trim, rejecting anything that is not a syntactically valid address."""
    raw = (email or "").strip()
    if not raw:
        raise ValidationError("Valid email address is required")
    try:
        validate_email(raw, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Valid email address is required: {e}")
    return raw.lower()


class AccountStore:
    def __init__(self, db):
        self.collection = db.accounts

    async def get(self, account_id: str) -> Optional[Account]:
        doc = await self.collection.find_one({"account_id": account_id}, {"_id": 0})
        return Account.model_validate(doc) if doc else None

    async def get_by_processor_customer_id(self, customer_id: str) -> Optional[Account]:
        doc = await self.collection.find_one({"processor_customer_id": customer_id}, {"_id": 0})
        return Account.model_validate(doc) if doc else None

    async def find_or_create_by_email(
        self,
        email: str,
        display_name: Optional[str] = None,
    ) -> Tuple[Account, bool]:
        """Return (account, created). Safe under concurrent callers for the same email."""
        normalized = normalize_email(email)
        candidate = Account(
            email=normalized,
            display_name=display_name or normalized.split("@")[0],
            cached_plan=Plan.FREE,
        )
        doc = candidate.model_dump(mode="python")
        doc["cached_plan"] = candidate.cached_plan.value

        for attempt in range(MAX_UPSERT_ATTEMPTS):
            try:
                stored = await self.collection.find_one_and_update(
                    {"email": normalized},
                    {"$setOnInsert": doc},
                    upsert=True,
                    projection={"_id": 0},
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Lost the insert race - the winner's document is now visible
                logger.debug("Account upsert race for %s (attempt %s)", normalized, attempt + 1)
                existing = await self.collection.find_one({"email": normalized}, {"_id": 0})
                if existing:
                    return Account.model_validate(existing), False
                continue

            created = stored.get("account_id") == candidate.account_id
            if created:
                logger.info(f"Account created for {normalized}: {candidate.account_id}")
            return Account.model_validate(stored), created

        raise RuntimeError(f"Could not find or create account for {normalized}")

    async def update_cached_entitlement(
        self,
        account_id: str,
        plan: Plan,
        record_version: int,
        processor_customer_id: Optional[str] = None,
    ) -> bool:
        """Refresh the read-path cache from subscription record `record_version`.

        Writers finish in any order after their compare-and-swap, so the cache only
        moves forward: a refresh from an older record version is dropped. Returns
        whether the cache was written.
        """
        update = {
            "cached_plan": plan.value,
            "cached_version": record_version,
            "updated_at": utc_now(),
        }
        if processor_customer_id:
            update["processor_customer_id"] = processor_customer_id
        result = await self.collection.update_one(
            {
                "account_id": account_id,
                "$or": [
                    {"cached_version": {"$lt": record_version}},
                    {"cached_version": {"$exists": False}},
                ],
            },
            {"$set": update},
        )
        if result.modified_count == 0:
            logger.debug(f"Cached entitlement for {account_id} already at or past version {record_version}")
        return result.modified_count > 0
