"""
Notification Tests.

============================================================
TEST CATEGORIES
============================================================
1. Notification builders
2. Dispatcher (fire-and-forget, failure isolation)
3. Push gateway client

============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import web, test_utils

from group_ordering import (
    LoggingNotifier,
    Notification,
    NotificationConfig,
    NotificationDispatcher,
    NotificationType,
    Notifier,
    PushGatewayNotifier,
    TimeoutConfig,
)
from group_ordering.notifications import (
    group_status_changed,
    participant_joined,
    payment_marked,
    reimbursement_marked,
)


def sample(recipient: str = "alice") -> Notification:
    return participant_joined("leader", recipient, "g1", "Lunch", url="http://front/orders/g1")


class FailingNotifier(Notifier):
    async def notify(self, notification):
        raise RuntimeError("gateway down")


class HangingNotifier(Notifier):
    async def notify(self, notification):
        await asyncio.sleep(10)


# ============================================================
# BUILDERS
# ============================================================

class TestBuilders:
    """Tests for notification helper functions."""

    def test_participant_joined_goes_to_leader(self):
        notification = sample()

        assert notification.recipient_id == "leader"
        assert notification.data == {"group_order_id": "g1", "participant_id": "alice"}
        assert "Lunch" in notification.body

    def test_payment_marked(self):
        notification = payment_marked("leader", "alice", "g1", False)

        assert notification.recipient_id == "leader"
        assert "not paid" in notification.body
        assert notification.data["paid"] is False

    def test_reimbursement_marked_goes_to_participant(self):
        notification = reimbursement_marked("alice", "g1", True)

        assert notification.recipient_id == "alice"
        assert notification.notification_type == NotificationType.REIMBURSEMENT_MARKED

    def test_group_status_changed_one_per_recipient(self):
        notifications = group_status_changed(
            NotificationType.GROUP_COMPLETED,
            ["alice", "bob"],
            "g1",
            None,
            details={"external_order_id": "EXT-1"},
        )

        assert [n.recipient_id for n in notifications] == ["alice", "bob"]
        assert notifications[0].data == {"group_order_id": "g1", "external_order_id": "EXT-1"}
        assert notifications[0].body.startswith("Your group order")

    def test_payload_tag_is_unique(self):
        first = PushGatewayNotifier.build_payload(sample())
        second = PushGatewayNotifier.build_payload(sample())

        assert first["tag"].startswith("group-g1-")
        assert first["tag"] != second["tag"]
        assert first["data"]["type"] == "PARTICIPANT_JOINED"
        assert first["data"]["url"] == "http://front/orders/g1"


# ============================================================
# DISPATCHER
# ============================================================

class TestDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.mark.asyncio
    async def test_dispatch_delivers_in_background(self):
        notifier = LoggingNotifier()
        dispatcher = NotificationDispatcher(notifier)

        task = dispatcher.dispatch(sample())
        assert task is not None

        await dispatcher.drain()

        assert len(notifier.sent) == 1
        assert dispatcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self):
        dispatcher = NotificationDispatcher(FailingNotifier())

        dispatcher.dispatch_all([sample("alice"), sample("bob")])
        await dispatcher.drain()

        assert dispatcher.failures == 2

    @pytest.mark.asyncio
    async def test_hanging_delivery_times_out(self):
        dispatcher = NotificationDispatcher(
            HangingNotifier(),
            timeout_config=TimeoutConfig(notification_timeout_seconds=0.05),
        )

        dispatcher.dispatch(sample())
        await dispatcher.drain()

        assert dispatcher.failures == 1

    @pytest.mark.asyncio
    async def test_disabled(self):
        notifier = LoggingNotifier()
        dispatcher = NotificationDispatcher(notifier, NotificationConfig(enabled=False))

        assert dispatcher.dispatch(sample()) is None
        await dispatcher.drain()

        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_close_drains_and_closes_notifier(self):
        notifier = LoggingNotifier()
        notifier.close = AsyncMock()
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.dispatch(sample())
        await dispatcher.close()

        assert len(notifier.sent) == 1
        notifier.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logging_notifier_history_is_bounded(self):
        notifier = LoggingNotifier(max_history=2)

        for recipient in ("a", "b", "c"):
            await notifier.notify(sample(recipient))

        assert [n.data["participant_id"] for n in notifier.sent] == ["b", "c"]


# ============================================================
# PUSH GATEWAY
# ============================================================

class FakeGateway:
    def __init__(self):
        self.received = []
        self.authorization = []
        self.status = 200

    async def handle(self, request):
        self.authorization.append(request.headers.get("Authorization"))
        self.received.append(await request.json())
        if self.status >= 400:
            return web.Response(status=self.status, text="unavailable")
        return web.json_response({"delivered": 1})


@pytest_asyncio.fixture
async def gateway():
    """Fake push gateway on a local port."""
    fake = FakeGateway()
    app = web.Application()
    app.router.add_post("/push", fake.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("/push"))
    yield fake
    await server.close()


class TestPushGatewayNotifier:
    """Tests for PushGatewayNotifier."""

    @pytest.mark.asyncio
    async def test_posts_payload_with_token(self, gateway, monkeypatch):
        monkeypatch.setenv("PUSH_GATEWAY_TOKEN", "secret")
        notifier = PushGatewayNotifier(NotificationConfig(gateway_url=gateway.url))

        try:
            await notifier.notify(sample())
        finally:
            await notifier.close()

        assert gateway.authorization == ["Bearer secret"]
        assert gateway.received[0]["user_id"] == "leader"
        assert gateway.received[0]["data"]["group_order_id"] == "g1"

    @pytest.mark.asyncio
    async def test_gateway_error_raises(self, gateway):
        gateway.status = 503
        notifier = PushGatewayNotifier(NotificationConfig(gateway_url=gateway.url))

        try:
            with pytest.raises(RuntimeError):
                await notifier.notify(sample())
        finally:
            await notifier.close()

    @pytest.mark.asyncio
    async def test_gateway_error_counted_by_dispatcher(self, gateway):
        gateway.status = 500
        notifier = PushGatewayNotifier(NotificationConfig(gateway_url=gateway.url))
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.dispatch(sample())
        await dispatcher.close()

        assert dispatcher.failures == 1

    @pytest.mark.asyncio
    async def test_unconfigured_is_a_no_op(self):
        notifier = PushGatewayNotifier(NotificationConfig(gateway_url=""))

        await notifier.notify(sample())

        assert not notifier.is_configured
