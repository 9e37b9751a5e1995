"""
In-memory, Motor-shaped collections and a Stripe gateway double for unit tests.

Supports exactly the query surface the stores use: equality, $in, $lt, $exists
and top-level $or filters;
$set / $inc / $setOnInsert updates; upserts; sort/limit cursors; unique keys that
raise DuplicateKeyError like a unique index would.
"""
import asyncio
import copy
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError
from pymongo.results import UpdateResult

from auth import create_access_token
from errors import NotFound
from models import Account
from services.stripe_gateway import StripeGateway


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, branch) for branch in expected):
                return False
            continue
        actual = doc.get(key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$in":
                    if actual not in operand:
                        return False
                elif op == "$lt":
                    if actual is None or not actual < operand:
                        return False
                elif op == "$exists":
                    if (key in doc) != bool(operand):
                        return False
                else:
                    raise NotImplementedError(op)
        elif actual != expected:
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = copy.deepcopy(doc)
    if projection:
        included = [k for k, v in projection.items() if v and k != "_id"]
        if included:
            out = {k: out.get(k) for k in included if k in out}
    return out


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1)
        return self

    def limit(self, n: int):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    def __init__(self, unique=()):
        self.docs: List[Dict[str, Any]] = []
        self.unique = tuple(unique)
        self.indexes = []

    def _violates_unique(self, candidate: Dict[str, Any], ignore=None) -> bool:
        for field in self.unique:
            value = candidate.get(field)
            if value is None:
                continue
            for doc in self.docs:
                if doc is not ignore and doc.get(field) == value:
                    return True
        return False

    def _first(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return doc
        return None

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return str(keys)

    async def find_one(self, query, projection=None, **kwargs):
        doc = self._first(query)
        return _project(doc, projection) if doc is not None else None

    async def insert_one(self, doc, **kwargs):
        if self._violates_unique(doc):
            raise DuplicateKeyError("E11000 duplicate key error", code=11000)
        self.docs.append(copy.deepcopy(doc))

    def _apply_update(self, doc, update):
        for field, value in (update.get("$set") or {}).items():
            doc[field] = copy.deepcopy(value)
        for field, value in (update.get("$inc") or {}).items():
            doc[field] = doc.get(field, 0) + value

    async def update_one(self, query, update, upsert=False, **kwargs):
        doc = self._first(query)
        if doc is not None:
            self._apply_update(doc, update)
        matched = 0 if doc is None else 1
        return UpdateResult({"n": matched, "nModified": matched, "upserted": None}, True)

    async def find_one_and_update(self, query, update, upsert=False, projection=None, return_document=None, **kwargs):
        doc = self._first(query)
        if doc is not None:
            self._apply_update(doc, update)
            return _project(doc, projection)
        if not upsert:
            return None

        # Yield between the miss and the insert so concurrent upserts interleave
        await asyncio.sleep(0)
        new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        new_doc.update(copy.deepcopy(update.get("$setOnInsert") or {}))
        self._apply_update(new_doc, update)
        if self._violates_unique(new_doc):
            raise DuplicateKeyError("E11000 duplicate key error", code=11000)
        self.docs.append(new_doc)
        return _project(new_doc, projection)

    def find(self, query=None, projection=None, **kwargs):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])


class FakeDatabase:
    def __init__(self):
        self.accounts = FakeCollection(unique=("email", "account_id"))
        self.subscriptions = FakeCollection(unique=("account_id",))
        self.webhook_events = FakeCollection(unique=("event_id",))
        self.audit_logs = FakeCollection()


class FakeGateway(StripeGateway):
    """Stripe gateway with canned responses. Webhook verification is the real one."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.latest_by_customer: Dict[str, Optional[Dict[str, Any]]] = {}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.invoices_by_id: Dict[str, Dict[str, Any]] = {}
        self.pdfs: Dict[str, bytes] = {}
        self.error: Optional[Exception] = None
        self._session_counter = 0

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error

    async def create_checkout_session(self, price_id, success_url, cancel_url, metadata,
                                      customer_id=None, customer_email=None):
        self._record("create_checkout_session", price_id=price_id, success_url=success_url,
                     cancel_url=cancel_url, metadata=metadata, customer_id=customer_id,
                     customer_email=customer_email)
        self._session_counter += 1
        session_id = f"cs_test_{self._session_counter}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    async def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return self.subscriptions[subscription_id]

    async def latest_subscription_for_customer(self, customer_id):
        self._record("latest_subscription_for_customer", customer_id)
        return self.latest_by_customer.get(customer_id)

    async def cancel_at_period_end(self, subscription_id):
        self._record("cancel_at_period_end", subscription_id)
        sub = dict(self.subscriptions.get(subscription_id) or {"id": subscription_id, "status": "active"})
        sub["cancel_at_period_end"] = True
        return sub

    async def list_invoices(self, customer_id, limit=50):
        self._record("list_invoices", customer_id, limit=limit)
        return self.invoices.get(customer_id, [])

    async def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        if invoice_id not in self.invoices_by_id:
            raise NotFound("No such invoice")
        return self.invoices_by_id[invoice_id]

    async def download_invoice_pdf(self, url):
        self._record("download_invoice_pdf", url)
        return self.pdfs[url]

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


# ============================================================================
# Stripe payload builders
# ============================================================================

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for payload (t=...,v1=HMAC-SHA256)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_id: str, event_type: str, obj: Dict[str, Any], created: int = 1700000000) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def encode_event(event: Dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def make_subscription(
    sub_id: str = "sub_test_001",
    customer: str = "cus_test_001",
    status: str = "active",
    plan: Optional[str] = "pro",
    account_id: Optional[str] = None,
    period_start: int = 1700000000,
    period_end: int = 1702592000,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    metadata = {}
    if plan:
        metadata["plan"] = plan
    if account_id:
        metadata["account_id"] = account_id
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata,
        "items": {"data": [{"price": {"id": "price_pro_monthly"}}]},
    }


def make_checkout_session(
    account_id: str,
    plan: str = "pro",
    sub_id: str = "sub_test_001",
    customer: str = "cus_test_001",
) -> Dict[str, Any]:
    return {
        "id": "cs_test_completed",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": sub_id,
        "metadata": {"account_id": account_id, "plan": plan, "billing_interval": "monthly"},
    }


def make_invoice(
    invoice_id: str = "in_test_001",
    sub_id: Optional[str] = "sub_test_001",
    customer: str = "cus_test_001",
    **extra,
) -> Dict[str, Any]:
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": sub_id,
        "status": "open",
        "amount_paid": 0,
        "currency": "usd",
    }
    invoice.update(extra)
    return invoice


def seed_account(db: FakeDatabase, email="owner@example.com", account_id="acct-001", customer_id=None) -> Account:
    account = Account(account_id=account_id, email=email, processor_customer_id=customer_id)
    doc = account.model_dump()
    doc["cached_plan"] = account.cached_plan.value
    db.accounts.docs.append(doc)
    return account


def auth_headers(account_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'account_id': account_id})}"}
