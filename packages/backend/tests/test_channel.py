"""Reconnecting channel tests — fake sockets, fake sleep, fake clock.

Learn: The channel takes its connector, sleep and clock as arguments,
so tests can drive every path without a network:

- FakeConnector hands out FakeSockets (or fails on demand)
- an instant sleep lets a whole backoff cascade run in a few loop turns
- a gated sleep holds a retry "pending" until the test releases it
"""

import asyncio

import pytest
from websockets.protocol import State

from conftest import FakeConnector, InstantSleep
from ticketflow.client.backoff import Phase
from ticketflow.client.cache import QueryCache
from ticketflow.client.channel import ReconnectingChannel, ws_url_for
from ticketflow.client.router import InvalidationRouter
from ticketflow.events.envelope import encode


class GatedSleep:
    def __init__(self):
        self.delays: list[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await self.gate.wait()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _settle(predicate, rounds: int = 500) -> bool:
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


@pytest.fixture()
def notices():
    return []


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
async def make_channel(notices, clock):
    channels = []

    def factory(connector, sleep=None, router=None, on_result=None):
        ch = ReconnectingChannel(
            "https://desk.example.com",
            router,
            notify=notices.append,
            connector=connector,
            sleep=sleep or InstantSleep(),
            clock=clock,
            on_result=on_result,
        )
        channels.append(ch)
        return ch

    yield factory
    for ch in channels:
        await ch.aclose()


# ═══════════════════════════════════════════════════════════
# URL derivation
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    ("base", "expected"),
    [
        ("https://desk.example.com", "wss://desk.example.com/ws"),
        ("http://localhost:8000", "ws://localhost:8000/ws"),
        ("http://localhost:80/app/", "ws://localhost/ws"),
        ("https://desk.example.com:443", "wss://desk.example.com/ws"),
        ("https://desk.example.com:8443/tickets?x=1", "wss://desk.example.com:8443/ws"),
        ("http://[::1]:8000", "ws://[::1]:8000/ws"),
        ("wss://already.example.com", "wss://already.example.com/ws"),
    ],
)
def test_ws_url_for(base, expected):
    assert ws_url_for(base) == expected


def test_ws_url_for_custom_path():
    assert ws_url_for("http://h:9000", "realtime") == "ws://h:9000/realtime"


@pytest.mark.parametrize("base", ["ftp://files.example.com", "not a url", "http://"])
def test_ws_url_for_rejects(base):
    with pytest.raises(ValueError):
        ws_url_for(base)


# ═══════════════════════════════════════════════════════════
# Connect + handshake
# ═══════════════════════════════════════════════════════════


async def test_authenticate_connects_and_sends_auth(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    assert ch.state.phase is Phase.IDLE

    await ch.authenticate("agent-1", "tok-123")
    assert await _settle(lambda: ch.is_connected)

    assert connector.urls == ["wss://desk.example.com/ws"]
    auth = connector.sockets[0].sent[0]
    assert auth["type"] == "auth"
    assert auth["userId"] == "agent-1"
    assert auth["data"] == {"userId": "agent-1", "token": "tok-123"}
    assert "timestamp" in auth


async def test_no_connection_before_auth(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.connect()
    await _settle(lambda: False, rounds=5)
    assert connector.calls == 0


async def test_connect_is_guarded_while_open(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.authenticate("agent-1")
    await _settle(lambda: ch.is_connected)

    await ch.connect()
    await ch.connect()
    assert connector.calls == 1


async def test_subscriptions_sent_and_replayed_on_reconnect(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.subscribe(42)
    await ch.authenticate("customer-1")
    await _settle(lambda: ch.is_connected)

    first = connector.sockets[0]
    assert [m["type"] for m in first.sent] == ["auth", "subscribe"]
    assert first.sent[1]["data"] == {"ticketId": "42"}

    await ch.subscribe(7)
    assert first.sent[-1]["type"] == "subscribe"
    assert first.sent[-1]["data"] == {"ticketId": "7"}

    first.drop()
    assert await _settle(lambda: len(connector.sockets) == 2 and ch.is_connected)
    second = connector.sockets[1]
    assert second.sent[0]["type"] == "auth"
    assert sorted(m["data"]["ticketId"] for m in second.sent[1:]) == ["42", "7"]


async def test_unsubscribe_forgets_ticket(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.authenticate("customer-1")
    await _settle(lambda: ch.is_connected)

    await ch.subscribe(42)
    await ch.unsubscribe(42)
    assert ch.subscriptions == frozenset()
    assert connector.sockets[0].sent[-1]["type"] == "unsubscribe"


async def test_send_while_closed_is_dropped(make_channel):
    ch = make_channel(FakeConnector())
    assert await ch.send("ping") is False


# ═══════════════════════════════════════════════════════════
# Inbound
# ═══════════════════════════════════════════════════════════


async def test_inbound_frames_reach_router_in_order(make_channel, notices):
    cache = QueryCache()
    cache.set("/api/tasks/42", {})
    router = InvalidationRouter(cache, notify=notices.append, principal=lambda: "agent-1")
    seen = []
    ch = make_channel(FakeConnector(), router=router, on_result=lambda e, r: seen.append(e.type))

    await ch.authenticate("agent-1")
    await _settle(lambda: ch.is_connected)
    ws = ch._ws

    ws.push("definitely not json")
    ws.push(encode("connected", {"userId": "agent-1"}))
    ws.push(encode("ticket:updated", {"id": 42, "changes": {"status": "resolved"}}))
    assert await _settle(lambda: len(seen) == 2)
    await ch.inbound.join()

    assert seen == ["connected", "ticket:updated"]
    assert cache.is_stale("/api/tasks/42")
    assert [n.title for n in notices] == ["Ticket resolved"]


async def test_pump_survives_a_failing_result_hook(make_channel):
    seen = []

    def hook(event, result):
        seen.append(event.type)
        if len(seen) == 1:
            raise RuntimeError("display broke")

    ch = make_channel(FakeConnector(), on_result=hook)
    await ch.authenticate("agent-1")
    await _settle(lambda: ch.is_connected)

    ch._ws.push(encode("connected", {"userId": "agent-1"}))
    ch._ws.push(encode("ticket:updated", {"id": 42, "changes": {}}))
    assert await _settle(lambda: len(seen) == 2)
    assert not ch._pump_task.done()


# ═══════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════


async def test_retries_with_backoff_then_gives_up(make_channel):
    connector = FakeConnector(failures=100)
    sleep = InstantSleep()
    ch = make_channel(connector, sleep=sleep)

    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.GAVE_UP)

    assert connector.calls == 6
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert ch.gave_up.is_set()

    # No further automatic retries
    await _settle(lambda: False, rounds=20)
    assert connector.calls == 6


async def test_auth_toggle_restarts_after_giving_up(make_channel):
    connector = FakeConnector(failures=6)
    ch = make_channel(connector)
    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.GAVE_UP)

    # Same principal again is not a toggle
    await ch.authenticate("agent-1")
    assert connector.calls == 6

    await ch.logout()
    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.is_connected)
    assert ch.state.attempts == 0
    assert not ch.gave_up.is_set()


async def test_successful_open_resets_attempts(make_channel):
    connector = FakeConnector(failures=2)
    sleep = InstantSleep()
    ch = make_channel(connector, sleep=sleep)

    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.is_connected)
    assert ch.state.attempts == 0
    assert sleep.delays == [1.0, 2.0]

    ch._ws.drop()
    assert await _settle(lambda: len(connector.sockets) == 2 and ch.is_connected)
    assert sleep.delays == [1.0, 2.0, 1.0]


async def test_sync_connector_failure_is_handled_like_a_close(make_channel, notices):
    def broken(url):
        raise ValueError("bad uri")

    sleep = GatedSleep()
    ch = make_channel(broken, sleep=sleep)
    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.BACKOFF)
    assert ch.state.attempts == 1
    assert len(notices) == 1


async def test_error_notices_throttled(make_channel, notices, clock):
    connector = FakeConnector(failures=100)
    ch = make_channel(connector)

    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.GAVE_UP)
    assert len(notices) == 1
    assert notices[0].title == "Realtime connection issue"
    assert "retry automatically" in notices[0].description

    clock.now += 6.0
    await ch.logout()
    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.GAVE_UP)
    assert len(notices) == 2


# ═══════════════════════════════════════════════════════════
# Disconnect in every state
# ═══════════════════════════════════════════════════════════


async def test_disconnect_cancels_pending_retry(make_channel):
    connector = FakeConnector(failures=1)
    sleep = GatedSleep()
    ch = make_channel(connector, sleep=sleep)

    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.BACKOFF and sleep.delays)

    await ch.disconnect()
    assert ch.state.phase is Phase.IDLE
    assert ch.state.attempts == 0

    sleep.gate.set()
    await _settle(lambda: False, rounds=20)
    assert connector.calls == 1


async def test_stale_retry_timer_is_ignored(make_channel):
    """A timer that fires after logout must not reconnect."""
    connector = FakeConnector(failures=1)
    sleep = GatedSleep()
    ch = make_channel(connector, sleep=sleep)

    await ch.authenticate("agent-1")
    assert await _settle(lambda: ch.state.phase is Phase.BACKOFF)
    pending = ch._retry_task
    ch._retry_task = None  # keep it alive past disconnect()

    await ch.logout()
    sleep.gate.set()
    await pending
    assert connector.calls == 1
    assert ch.state.phase is Phase.IDLE


async def test_disconnect_while_open_closes_socket(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.authenticate("agent-1")
    await _settle(lambda: ch.is_connected)
    ws = connector.sockets[0]

    await ch.disconnect()
    assert ws.state is State.CLOSED
    assert ch.state.phase is Phase.IDLE
    assert not ch.is_connected

    await _settle(lambda: False, rounds=20)
    assert connector.calls == 1


async def test_disconnect_while_connecting(make_channel):
    async def hanging(url):
        await asyncio.Event().wait()

    ch = make_channel(hanging)
    await ch.authenticate("agent-1")
    await _settle(lambda: False, rounds=3)
    assert ch.state.phase is Phase.CONNECTING

    await ch.disconnect()
    assert ch.state.phase is Phase.IDLE


async def test_disconnect_when_idle_is_harmless(make_channel):
    ch = make_channel(FakeConnector())
    await ch.disconnect()
    await ch.disconnect()
    assert ch.state.phase is Phase.IDLE


async def test_switching_principal_reconnects(make_channel):
    connector = FakeConnector()
    ch = make_channel(connector)
    await ch.authenticate("agent-1")
    await _settle(lambda: ch.is_connected)

    await ch.authenticate("agent-2")
    assert await _settle(lambda: len(connector.sockets) == 2 and ch.is_connected)
    assert connector.sockets[0].state is State.CLOSED
    assert connector.sockets[1].sent[0]["userId"] == "agent-2"


async def test_async_with_closes_everything(notices, clock):
    connector = FakeConnector()
    async with ReconnectingChannel(
        "http://localhost:8000", connector=connector, notify=notices.append, clock=clock
    ) as ch:
        await ch.authenticate("agent-1")
        await _settle(lambda: ch.is_connected)

    assert connector.sockets[0].state is State.CLOSED
    assert ch.state.phase is Phase.IDLE
    assert ch._pump_task is None
