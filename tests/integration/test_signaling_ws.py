"""
Tests for the websocket signaling endpoint.

The TestClient is entered as a context manager so every socket shares one
event loop with the call runtime.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from callhub.routes import signaling
from callhub.services.notification_service import ConnectionNotificationDispatcher


@pytest.fixture
def ws_harness(make_harness):
    return make_harness(notifier_factory=lambda presence: ConnectionNotificationDispatcher(presence))


@pytest.fixture
def client(ws_harness):
    app = FastAPI()
    app.include_router(signaling.router)
    app.state.runtime = ws_harness.runtime
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(ws_harness.manager.shutdown)


def join(websocket, user_id: str) -> dict:
    websocket.send_json({"event": "join", "data": {"userId": user_id}})
    frame = websocket.receive_json()
    assert frame["event"] == "joined"
    return frame["data"]


def test_join_reports_status(client):
    with client.websocket_connect("/ws") as websocket:
        data = join(websocket, "recipient")

    assert data == {"userId": "recipient", "status": "available", "currentCallId": None}


def test_call_events_require_join(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"event": "initiate_call", "data": {"recipientId": "recipient"}})
        frame = websocket.receive_json()

    assert frame["event"] == "error"
    assert frame["data"]["event"] == "initiate_call"


def test_invalid_frames_get_error_replies(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_text("not json")
        invalid = websocket.receive_json()

        join(websocket, "caller")
        websocket.send_json({"event": "teleport", "data": {}})
        unknown = websocket.receive_json()

        websocket.send_json({"event": "accept_call", "data": {}})
        missing_field = websocket.receive_json()

    assert invalid["event"] == "error"
    assert invalid["data"]["message"] == "Invalid message"
    assert unknown["data"]["message"] == "Unknown event"
    assert missing_field["data"]["message"] == "Invalid message"


def test_full_call_over_websocket(client, ws_harness):
    with (
        client.websocket_connect("/ws") as caller,
        client.websocket_connect("/ws") as recipient,
    ):
        join(caller, "caller")
        join(recipient, "recipient")

        caller.send_json(
            {
                "event": "initiate_call",
                "data": {"recipientId": "recipient", "callType": "video", "callId": "call-ws"},
            }
        )
        initiated = caller.receive_json()
        incoming = recipient.receive_json()

        assert initiated["event"] == "call_initiated"
        assert initiated["data"]["callId"] == "call-ws"
        assert incoming["event"] == "incoming_call"
        assert incoming["data"]["callId"] == "call-ws"

        recipient.send_json({"event": "accept_call", "data": {"callId": "call-ws"}})
        assert caller.receive_json()["event"] == "call_accepted"
        assert recipient.receive_json()["event"] == "call_accepted"

        ws_harness.clock.advance(60)
        caller.send_json({"event": "end_call", "data": {"callId": "call-ws", "durationSeconds": 60}})
        ended = caller.receive_json()
        assert recipient.receive_json()["event"] == "call_ended"

    assert ended["event"] == "call_ended"
    assert ended["data"]["durationSeconds"] == 60
    assert ended["data"]["coinsDeducted"] == 60
    assert ws_harness.ledger.balances["caller"] == 140


def test_busy_recipient_rejected_over_websocket(client):
    with (
        client.websocket_connect("/ws") as caller,
        client.websocket_connect("/ws") as caller2,
        client.websocket_connect("/ws") as recipient,
    ):
        join(caller, "caller")
        join(caller2, "caller2")
        join(recipient, "recipient")

        caller.send_json({"event": "initiate_call", "data": {"recipientId": "recipient"}})
        assert caller.receive_json()["event"] == "call_initiated"
        assert recipient.receive_json()["event"] == "incoming_call"

        caller2.send_json({"event": "initiate_call", "data": {"recipientId": "recipient"}})
        failed = caller2.receive_json()

    assert failed["event"] == "call_failed"
    assert failed["data"]["reason"] == "ringing"


def test_ping_reports_tracking(client):
    with (
        client.websocket_connect("/ws") as caller,
        client.websocket_connect("/ws") as recipient,
    ):
        join(caller, "caller")
        join(recipient, "recipient")
        caller.send_json(
            {"event": "initiate_call", "data": {"recipientId": "recipient", "callId": "call-ping"}}
        )
        caller.receive_json()
        recipient.receive_json()
        recipient.send_json({"event": "accept_call", "data": {"callId": "call-ping"}})
        caller.receive_json()
        recipient.receive_json()

        caller.send_json({"event": "call_ping", "data": {"callId": "call-ping"}})
        pong = caller.receive_json()

        caller.send_json({"event": "call_ping", "data": {"callId": "unknown"}})
        untracked = caller.receive_json()

    assert pong == {"event": "call_pong", "data": {"callId": "call-ping", "tracked": True}}
    assert untracked["data"]["tracked"] is False


def test_mid_call_disconnect_ends_call_for_peer(client, ws_harness):
    with client.websocket_connect("/ws") as recipient:
        join(recipient, "recipient")
        with client.websocket_connect("/ws") as caller:
            join(caller, "caller")
            caller.send_json(
                {"event": "initiate_call", "data": {"recipientId": "recipient", "callId": "call-drop"}}
            )
            caller.receive_json()
            recipient.receive_json()
            recipient.send_json({"event": "accept_call", "data": {"callId": "call-drop"}})
            caller.receive_json()
            recipient.receive_json()
            ws_harness.clock.advance(40)

        ended = recipient.receive_json()
        dropped = recipient.receive_json()

    assert ended["event"] == "call_ended"
    assert ended["data"]["reason"] == "connection_lost"
    assert dropped == {
        "event": "participant_disconnected",
        "data": {"callId": "call-drop", "userId": "caller"},
    }
    assert ws_harness.store.get("call-drop").status.value == "disconnected"
    assert ws_harness.ledger.balances["caller"] == 160


def test_second_login_replaces_first_connection(client):
    with client.websocket_connect("/ws") as first:
        join(first, "user")
        with client.websocket_connect("/ws") as second:
            join(second, "user")
            replaced = first.receive_json()

    assert replaced == {"event": "session_replaced", "data": {"reason": "session_replaced"}}
