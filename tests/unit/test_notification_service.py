import json

import httpx
import pytest

from callhub.calls.presence import PresenceRegistry
from callhub.services import notification_service
from callhub.services.notification_service import (
    ConnectionNotificationDispatcher,
    PushGatewayError,
    PushNotifier,
    PushReachability,
)
from conftest import FakeConnection


def push_notifier(handler) -> PushNotifier:
    return PushNotifier(
        webhook_url="https://push.example.test/notify",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_live_connection_receives_event():
    presence = PresenceRegistry()
    connection = FakeConnection()
    await presence.register("user", connection)
    dispatcher = ConnectionNotificationDispatcher(presence)

    delivered = await dispatcher.notify("user", "call_accepted", {"callId": "call-1"})

    assert delivered is True
    assert connection.events("call_accepted") == [{"callId": "call-1"}]


@pytest.mark.asyncio
async def test_offline_user_without_push_is_not_delivered():
    dispatcher = ConnectionNotificationDispatcher(PresenceRegistry())

    assert await dispatcher.notify("user", "incoming_call", {"callId": "call-1"}) is False


@pytest.mark.asyncio
async def test_incoming_call_falls_back_to_push():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    dispatcher = ConnectionNotificationDispatcher(PresenceRegistry(), push_notifier(handler))

    delivered = await dispatcher.notify("user", "incoming_call", {"callId": "call-1"})

    assert delivered is True
    assert len(requests) == 1
    assert json.loads(requests[0].content) == {
        "userId": "user",
        "event": "incoming_call",
        "data": {"callId": "call-1"},
    }


@pytest.mark.asyncio
async def test_non_call_events_are_never_pushed():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("push should not be attempted")

    dispatcher = ConnectionNotificationDispatcher(PresenceRegistry(), push_notifier(handler))

    assert await dispatcher.notify("user", "call_ended", {"callId": "call-1"}) is False


@pytest.mark.asyncio
async def test_push_retries_transient_status(monkeypatch):
    monkeypatch.setattr(notification_service, "BACKOFF_FACTOR", 0)
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    assert await push_notifier(handler).push("user", "incoming_call", {}) is True


@pytest.mark.asyncio
async def test_push_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400)

    with pytest.raises(PushGatewayError) as exc_info:
        await push_notifier(handler).push("user", "incoming_call", {})

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_dispatcher_swallows_push_failure(monkeypatch):
    monkeypatch.setattr(notification_service, "BACKOFF_FACTOR", 0)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("gateway down")

    dispatcher = ConnectionNotificationDispatcher(PresenceRegistry(), push_notifier(handler))

    assert await dispatcher.notify("user", "incoming_call", {"callId": "call-1"}) is False


@pytest.mark.asyncio
async def test_reachability_requires_gateway():
    notifier = PushNotifier()
    notifier.webhook_url = None
    reachability = PushReachability(notifier)

    assert await reachability.is_alternate_reachable("user") is False


@pytest.mark.asyncio
async def test_reachability_checks_push_tokens(monkeypatch):
    async def fake_fetch_val(query, params=(), **kwargs):
        return 2 if params == ("with-token",) else 0

    monkeypatch.setattr(notification_service, "fetch_val", fake_fetch_val)
    reachability = PushReachability(push_notifier(lambda request: httpx.Response(200)))

    assert await reachability.is_alternate_reachable("with-token") is True
    assert await reachability.is_alternate_reachable("no-token") is False
