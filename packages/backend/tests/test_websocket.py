"""WebSocket endpoint tests — handshake, subscriptions, end-to-end fan-out.

Learn: Starlette's TestClient drives the app on a background event loop.
Inside `with TestClient(app) as tc:` every HTTP call and every socket
shares that one loop, so an HTTP mutation's publish() lands on the
socket's outbox exactly as it would in production.

To prove that nothing *else* was delivered, tests send a ping and
expect the very next frame to be the pong: each channel is FIFO, so
any earlier push would arrive first.
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from conftest import auth_header
from ticketflow.auth.jwt import create_access_token
from ticketflow.config import settings


def _send(ws, event_type, data=None):
    ws.send_text(json.dumps({"type": event_type, "data": data or {}}))


def _recv(ws) -> dict:
    return json.loads(ws.receive_text())


def _auth(ws, user_id, token=None) -> dict:
    data = {"userId": user_id}
    if token:
        data["token"] = token
    _send(ws, "auth", data)
    return _recv(ws)


def _assert_quiet(ws):
    _send(ws, "ping")
    assert _recv(ws)["type"] == "pong"


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def tc(app):
    with TestClient(app) as test_client:
        yield test_client


# ═══════════════════════════════════════════════════════════
# Handshake
# ═══════════════════════════════════════════════════════════


def test_auth_yields_connected(tc):
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "agent-1")
        assert msg["type"] == "connected"
        assert msg["data"]["userId"] == "agent-1"
        assert "timestamp" in msg


def test_legacy_flat_auth_frame(tc):
    with tc.websocket_connect("/ws") as ws:
        ws.send_text(json.dumps({"type": "auth", "userId": "agent-1"}))
        assert _recv(ws)["type"] == "connected"


def test_auth_with_token_in_message(tc):
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "agent-1", create_access_token("agent-1", role="agent"))
        assert msg["type"] == "connected"


def test_auth_with_token_in_query(tc):
    token = create_access_token("agent-1", role="agent")
    with tc.websocket_connect(f"/ws?token={token}") as ws:
        assert _auth(ws, "agent-1")["type"] == "connected"


def test_token_subject_mismatch_rejected(tc):
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "agent-1", create_access_token("agent-2"))
        assert msg["type"] == "error"
        assert "does not match" in msg["data"]["message"]
        # Connection stays open
        _assert_quiet(ws)


def test_invalid_token_rejected(tc):
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "agent-1", "not-a-jwt")
        assert msg["type"] == "error"


def test_unknown_user_rejected(tc):
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "ghost")
        assert msg["type"] == "error"
        assert msg["data"]["message"] == "Unknown user"


def test_missing_user_id_rejected(tc):
    with tc.websocket_connect("/ws") as ws:
        _send(ws, "auth", {})
        msg = _recv(ws)
        assert msg["type"] == "error"
        assert msg["data"]["message"] == "userId is required"


def test_token_required_outside_development(tc, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    with tc.websocket_connect("/ws") as ws:
        msg = _auth(ws, "agent-1")
        assert msg["type"] == "error"
        assert msg["data"]["message"] == "Authentication required"


def test_rejected_channel_gets_no_pushes(tc):
    with tc.websocket_connect("/ws") as ws:
        _auth(ws, "ghost")
        r = tc.post(
            "/api/v1/notifications",
            json={"message": "Maintenance tonight"},
            headers=auth_header("admin-1"),
        )
        assert r.status_code == 202
        _assert_quiet(ws)


# ═══════════════════════════════════════════════════════════
# Frames
# ═══════════════════════════════════════════════════════════


def test_ping_pong(tc):
    with tc.websocket_connect("/ws") as ws:
        _send(ws, "ping")
        assert _recv(ws)["type"] == "pong"


def test_malformed_frames_keep_connection_open(tc):
    with tc.websocket_connect("/ws") as ws:
        ws.send_text("{not json")
        ws.send_text(json.dumps(["not", "an", "object"]))
        ws.send_text(json.dumps({"data": {}}))
        ws.send_bytes(b"\xff\xfe not text")
        _send(ws, "something:else")
        _assert_quiet(ws)


def test_channel_is_registered_and_released(tc, app):
    registry = app.state.registry
    with tc.websocket_connect("/ws") as ws:
        _auth(ws, "agent-1")
        _send(ws, "subscribe", {"ticketId": 7})
        _assert_quiet(ws)
        assert registry.stats() == {"channels": 1, "authenticated": 1, "subscriptions": 1}

        health = tc.get("/api/v1/health").json()
        assert health["realtime"]["channels"] == 1

    assert _wait_for(lambda: len(registry) == 0)


# ═══════════════════════════════════════════════════════════
# End to end: HTTP mutation → WebSocket push
# ═══════════════════════════════════════════════════════════


def test_ticket_lifecycle_reaches_subscriber(tc):
    with tc.websocket_connect("/ws") as ws:
        assert _auth(ws, "customer-1")["type"] == "connected"

        # The requester gets ticket:created as the creator
        r = tc.post(
            "/api/v1/tickets",
            json={"title": "VPN drops every hour", "assignee_id": "agent-1"},
            headers=auth_header("customer-1"),
        )
        assert r.status_code == 201
        ticket = r.json()

        created = _recv(ws)
        assert created["type"] == "ticket:created"
        assert created["data"]["ticketNumber"] == ticket["ticket_number"]
        assert created["data"]["assigneeId"] == "agent-1"

        _send(ws, "subscribe", {"ticketId": ticket["id"]})
        _assert_quiet(ws)

        r = tc.patch(
            f"/api/v1/tickets/{ticket['id']}",
            json={"status": "resolved"},
            headers=auth_header("agent-1"),
        )
        assert r.status_code == 200

        updated = _recv(ws)
        assert updated["type"] == "ticket:updated"
        assert updated["data"]["id"] == ticket["id"]
        assert updated["data"]["changes"] == {"status": "resolved"}

        r = tc.post(
            f"/api/v1/tickets/{ticket['id']}/comments",
            json={"content": "Fixed the DHCP lease time"},
            headers=auth_header("agent-1"),
        )
        assert r.status_code == 201
        comment = _recv(ws)
        assert comment["type"] == "ticket:comment"
        assert comment["data"]["isReply"] is True


def test_unsubscribed_channel_stops_receiving(tc):
    r = tc.post("/api/v1/tickets", json={"title": "Laptop fan"}, headers=auth_header("agent-1"))
    ticket_id = r.json()["id"]

    with tc.websocket_connect("/ws") as ws:
        _auth(ws, "customer-2")
        _send(ws, "subscribe", {"ticketId": ticket_id})
        _send(ws, "unsubscribe", {"ticketId": ticket_id})
        _assert_quiet(ws)

        tc.patch(f"/api/v1/tickets/{ticket_id}", json={"priority": "high"}, headers=auth_header("agent-1"))
        _assert_quiet(ws)


def test_system_notification_reaches_every_connected_user(tc):
    with tc.websocket_connect("/ws") as agent, tc.websocket_connect("/ws") as customer:
        _auth(agent, "agent-1")
        _auth(customer, "customer-1")

        r = tc.post(
            "/api/v1/notifications",
            json={"title": "Heads up", "message": "Email is degraded", "variant": "destructive"},
            headers=auth_header("admin-1"),
        )
        assert r.status_code == 202

        for ws in (agent, customer):
            msg = _recv(ws)
            assert msg["type"] == "system:notification"
            assert msg["data"]["message"] == "Email is degraded"
            assert msg["data"]["variant"] == "destructive"


def test_ticket_created_not_sent_to_unrelated_customer(tc):
    with tc.websocket_connect("/ws") as staff, tc.websocket_connect("/ws") as outsider:
        _auth(staff, "manager-1")
        _auth(outsider, "customer-2")

        tc.post("/api/v1/tickets", json={"title": "Password reset"}, headers=auth_header("customer-1"))

        assert _recv(staff)["type"] == "ticket:created"
        _assert_quiet(outsider)


def test_binary_json_frame_is_understood(tc):
    with tc.websocket_connect("/ws") as ws:
        ws.send_bytes(json.dumps({"type": "ping", "data": {}}).encode())
        assert ws.receive_json()["type"] == "pong"
