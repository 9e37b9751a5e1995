"""
Account store: email normalization and atomic find-or-create.
"""
import asyncio

import pytest

from errors import ValidationError
from models import Plan
from services.account_store import AccountStore, normalize_email
from fakes import FakeDatabase, seed_account


class TestNormalizeEmail:
    def test_lowercases_and_trims(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize("bad", ["", "   ", None, "not-an-email", "a@", "@x.com"])
    def test_rejects_malformed(self, bad):
        with pytest.raises(ValidationError):
            normalize_email(bad)


class TestFindOrCreate:
    @pytest.mark.asyncio
    async def test_creates_then_finds(self):
        db = FakeDatabase()
        store = AccountStore(db)

        account, created = await store.find_or_create_by_email("New@Example.com")
        assert created is True
        assert account.email == "new@example.com"
        assert account.cached_plan == Plan.FREE
        assert account.display_name == "new"

        again, created_again = await store.find_or_create_by_email("new@example.com ")
        assert created_again is False
        assert again.account_id == account.account_id
        assert len(db.accounts.docs) == 1

    @pytest.mark.asyncio
    async def test_fifty_concurrent_callers_create_exactly_one_account(self):
        db = FakeDatabase()
        store = AccountStore(db)

        results = await asyncio.gather(*[
            store.find_or_create_by_email("race@example.com") for _ in range(50)
        ])

        assert len(db.accounts.docs) == 1
        assert len({account.account_id for account, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1

    @pytest.mark.asyncio
    async def test_invalid_email_creates_nothing(self):
        db = FakeDatabase()
        with pytest.raises(ValidationError):
            await AccountStore(db).find_or_create_by_email("nope")
        assert db.accounts.docs == []


class TestCachedEntitlement:
    @pytest.mark.asyncio
    async def test_update_cached_plan_and_customer(self):
        db = FakeDatabase()
        store = AccountStore(db)
        account, _ = await store.find_or_create_by_email("c@example.com")

        await store.update_cached_entitlement(account.account_id, Plan.ENTERPRISE, 2, "cus_9")

        refreshed = await store.get(account.account_id)
        assert refreshed.cached_plan == Plan.ENTERPRISE
        assert refreshed.processor_customer_id == "cus_9"
        assert (await store.get_by_processor_customer_id("cus_9")).account_id == account.account_id

    @pytest.mark.asyncio
    async def test_missing_customer_id_is_not_cleared(self):
        db = FakeDatabase()
        store = AccountStore(db)
        account, _ = await store.find_or_create_by_email("d@example.com")
        await store.update_cached_entitlement(account.account_id, Plan.PRO, 2, "cus_1")
        await store.update_cached_entitlement(account.account_id, Plan.FREE, 3, None)

        refreshed = await store.get(account.account_id)
        assert refreshed.cached_plan == Plan.FREE
        assert refreshed.processor_customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_refresh_from_older_record_version_is_dropped(self):
        db = FakeDatabase()
        store = AccountStore(db)
        account, _ = await store.find_or_create_by_email("e@example.com")

        # Writer B (v3, free) refreshes before writer A (v2, pro)
        assert await store.update_cached_entitlement(account.account_id, Plan.FREE, 3) is True
        assert await store.update_cached_entitlement(account.account_id, Plan.PRO, 2) is False

        refreshed = await store.get(account.account_id)
        assert refreshed.cached_plan == Plan.FREE
        assert refreshed.cached_version == 3

    @pytest.mark.asyncio
    async def test_refresh_applies_to_legacy_account_without_version(self):
        db = FakeDatabase()
        seed_account(db, account_id="acct-legacy")
        del db.accounts.docs[0]["cached_version"]
        store = AccountStore(db)

        assert await store.update_cached_entitlement("acct-legacy", Plan.PRO, 1) is True
        assert (await store.get("acct-legacy")).cached_plan == Plan.PRO
