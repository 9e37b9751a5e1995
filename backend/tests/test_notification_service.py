"""
Notification sink (best-effort HTTP events) and lifecycle event classification.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from models import Account, Plan, SubscriptionRecord, SubscriptionStatus
from services.notification_service import (
    SUBSCRIPTION_LIFECYCLE,
    USER_ONBOARDING,
    NotificationSink,
    lifecycle_event_type,
)

HOOK_URL = "https://hooks.example.com/webhook"


def _record(status, plan=Plan.PRO):
    return SubscriptionRecord(account_id="acct-1", status=status, plan=plan)


def _mock_session(status=200):
    response = MagicMock(status=status)
    post_cm = MagicMock()
    post_cm.__aenter__.return_value = response
    session = MagicMock()
    session.post.return_value = post_cm
    session_cm = MagicMock()
    session_cm.__aenter__.return_value = session
    return session_cm, session


class TestLifecycleEventType:
    def test_first_record_is_created(self):
        assert lifecycle_event_type(None, _record(SubscriptionStatus.ACTIVE)) == "created"

    def test_nothing_relevant_changed(self):
        assert lifecycle_event_type(_record(SubscriptionStatus.ACTIVE), _record(SubscriptionStatus.ACTIVE)) is None

    @pytest.mark.parametrize("before,after,expected", [
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, "canceled"),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, "past_due"),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE, "renewed"),
        (SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE, "updated"),
    ])
    def test_status_changes(self, before, after, expected):
        assert lifecycle_event_type(_record(before), _record(after)) == expected

    def test_plan_change(self):
        assert lifecycle_event_type(
            _record(SubscriptionStatus.ACTIVE, Plan.PRO), _record(SubscriptionStatus.ACTIVE, Plan.ENTERPRISE)
        ) == "updated"


class TestNotificationSink:
    @pytest.mark.asyncio
    async def test_disabled_without_url(self, no_billing_env):
        sink = NotificationSink()
        assert sink.enabled is False
        assert await sink.notify(USER_ONBOARDING, {"userId": "acct-1"}) is False

    @pytest.mark.asyncio
    async def test_posts_json_to_event_path(self):
        session_cm, session = _mock_session(200)
        sink = NotificationSink(HOOK_URL + "/")

        with patch("services.notification_service.aiohttp.ClientSession", return_value=session_cm):
            delivered = await sink.notify(SUBSCRIPTION_LIFECYCLE, {"eventType": "created"})

        assert delivered is True
        url = session.post.call_args.args[0]
        assert url == f"{HOOK_URL}/{SUBSCRIPTION_LIFECYCLE}"
        body = json.loads(session.post.call_args.kwargs["data"])
        assert body["event"] == SUBSCRIPTION_LIFECYCLE
        assert body["eventType"] == "created"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_non_2xx_is_not_delivered(self):
        session_cm, _ = _mock_session(502)
        with patch("services.notification_service.aiohttp.ClientSession", return_value=session_cm):
            assert await NotificationSink(HOOK_URL).notify(USER_ONBOARDING, {}) is False

    @pytest.mark.asyncio
    async def test_connection_errors_are_swallowed(self):
        with patch(
            "services.notification_service.aiohttp.ClientSession",
            side_effect=aiohttp.ClientConnectionError("refused"),
        ):
            assert await NotificationSink(HOOK_URL).notify(USER_ONBOARDING, {}) is False

    @pytest.mark.asyncio
    async def test_dispatch_runs_in_background(self):
        sink = NotificationSink(HOOK_URL)
        sink.notify = AsyncMock(return_value=True)
        account = Account(account_id="acct-1", email="a@example.com", display_name="a")

        sink.account_created(account)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        sink.notify.assert_awaited_once()
        event_name, payload = sink.notify.await_args.args
        assert event_name == USER_ONBOARDING
        assert payload["userId"] == "acct-1"
        assert payload["subscriptionStatus"] == "free"

    def test_dispatch_disabled_schedules_nothing(self):
        sink = NotificationSink("")
        sink.dispatch(USER_ONBOARDING, {})
        assert sink._tasks == set()
