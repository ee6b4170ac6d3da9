"""Reconnecting channel — the client end of the realtime WebSocket.

Learn: This class is the impure shell around client/backoff.py. It owns
the socket, the retry timer task and the inbound pump; every decision
(may I connect? how long to wait? give up?) is delegated to the pure
transition functions, which is why those can be tested on their own.

Lifecycle:

    ch = ReconnectingChannel("https://helpdesk.example.com", router)
    await ch.authenticate("user-1", token)   # opens the socket
    await ch.subscribe(42)                   # replayed on every reconnect
    ...
    await ch.aclose()                        # always, on every exit path

Inbound frames are put on an asyncio.Queue by the socket reader and
handed to the router one at a time by a separate pump task, so a slow
handler never stalls the socket.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import structlog
import websockets
from websockets.protocol import State

from ticketflow.client.backoff import (
    Phase,
    ReconnectState,
    can_connect,
    connection_closed,
    connection_opened,
    disconnected,
    error_notice_due,
    retry_due,
    set_authenticated,
    start_connecting,
)
from ticketflow.client.config import ClientConfig
from ticketflow.client.notices import Notice, Notifier, log_notice
from ticketflow.client.router import HandleResult, InvalidationRouter
from ticketflow.events.envelope import EnvelopeError, Event, decode, encode, utcnow
from ticketflow.events.types import AUTH, SUBSCRIBE, UNSUBSCRIBE

logger = structlog.get_logger()

Connector = Callable[[str], Awaitable[Any]]
ResultHook = Callable[[Event, Optional[HandleResult]], None]

_WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}
_DEFAULT_PORTS = {"ws": 80, "wss": 443}


def ws_url_for(base_url: str, path: str = "/ws") -> str:
    """Derive the socket URL from the page/API origin.

    http → ws, https → wss. An explicit non-default port is kept.

        >>> ws_url_for("https://desk.example.com")
        'wss://desk.example.com/ws'
        >>> ws_url_for("http://localhost:8000/app")
        'ws://localhost:8000/ws'
    """
    parts = urlsplit(base_url)
    scheme = _WS_SCHEMES.get(parts.scheme.lower())
    if scheme is None or not parts.hostname:
        raise ValueError(f"Cannot derive a WebSocket URL from {base_url!r}")

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port and port != _DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"
    if not path.startswith("/"):
        path = "/" + path
    return f"{scheme}://{host}{path}"


class ReconnectingChannel:
    """Auto-reconnecting, authenticated WebSocket channel."""

    def __init__(
        self,
        base_url: str,
        router: Optional[InvalidationRouter] = None,
        *,
        config: Optional[ClientConfig] = None,
        notify: Optional[Notifier] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
        on_result: Optional[ResultHook] = None,
    ):
        self.config = config or ClientConfig()
        self.url = ws_url_for(base_url, self.config.ws_path)
        self.router = router
        self.notify = notify or log_notice
        self.on_result = on_result
        self._connector = connector or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self.state = ReconnectState()
        self.principal_id: Optional[str] = None
        self._token: Optional[str] = None
        self._subscriptions: set[str] = set()

        self._ws: Any = None
        self._connect_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.gave_up = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.state.phase is Phase.OPEN and self._ws is not None

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    # ═══════════════════════════════════════════════════════
    # Auth state
    # ═══════════════════════════════════════════════════════

    async def authenticate(self, principal_id: str, token: Optional[str] = None) -> None:
        """Become authenticated as principal_id and connect.

        Switching to a different principal tears the old connection
        down first, so the server never sees two identities on one
        socket.
        """
        if self.state.authenticated and principal_id != self.principal_id:
            await self.logout()
        self.principal_id = principal_id
        self._token = token
        self.state = set_authenticated(self.state, True)
        await self.connect()

    async def logout(self) -> None:
        self.state = set_authenticated(self.state, False)
        await self.disconnect()
        self.principal_id = None
        self._token = None

    # ═══════════════════════════════════════════════════════
    # Connect / disconnect
    # ═══════════════════════════════════════════════════════

    def _transport_busy(self) -> bool:
        if self._connect_task is not None and not self._connect_task.done():
            return True
        ws = self._ws
        return ws is not None and getattr(ws, "state", None) in (State.CONNECTING, State.OPEN)

    async def connect(self) -> None:
        """Open the socket unless one is already opening or open."""
        if self._transport_busy() or not can_connect(self.state):
            return
        self.gave_up.clear()
        self._cancel_retry()
        self.state = start_connecting(self.state)
        self._ensure_pump()
        self._connect_task = asyncio.create_task(self._run_connection())

    async def disconnect(self) -> None:
        """Cancel the pending retry, close the socket, reset attempts."""
        self._cancel_retry()
        self.state = disconnected(self.state)

        ws, self._ws = self._ws, None
        task, self._connect_task = self._connect_task, None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("client.close_failed", error=str(e))

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("client.disconnected", url=self.url)

    async def aclose(self) -> None:
        await self.disconnect()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    async def __aenter__(self) -> "ReconnectingChannel":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ─── Connection task ─────────────────────────────────

    async def _run_connection(self) -> None:
        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Refused, bad URI, handshake rejected: same path as a close
            self._report_error(e)
            self._handle_closed()
            return

        self._ws = ws
        self.state = connection_opened(self.state)
        logger.info("client.connected", url=self.url, principal_id=self.principal_id)

        try:
            await self._send_auth(ws)
            for ticket_id in sorted(self._subscriptions):
                await ws.send(encode(SUBSCRIBE, {"ticketId": ticket_id}))
            async for raw in ws:
                self.inbound.put_nowait(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report_error(e)

        if self._ws is ws:
            self._ws = None
        self._handle_closed()

    async def _send_auth(self, ws: Any) -> None:
        data: dict[str, Any] = {"userId": self.principal_id}
        if self._token:
            data["token"] = self._token
        await ws.send(json.dumps({
            "type": AUTH,
            "userId": self.principal_id,
            "data": data,
            "timestamp": utcnow().isoformat(),
        }))

    def _handle_closed(self) -> None:
        previous = self.state.phase
        self.state = connection_closed(self.state, self.config)

        if self.state.phase is Phase.BACKOFF:
            logger.info(
                "client.reconnect_scheduled",
                attempt=self.state.attempts,
                delay_ms=self.state.next_delay_ms,
            )
            self._retry_task = asyncio.create_task(
                self._retry_after(self.state.next_delay_ms, self.state.generation)
            )
        elif self.state.phase is Phase.GAVE_UP and previous is not Phase.GAVE_UP:
            logger.warning("client.reconnect_gave_up", attempts=self.state.attempts)
            self.gave_up.set()

    async def _retry_after(self, delay_ms: int, generation: int) -> None:
        await self._sleep(delay_ms / 1000)
        if not retry_due(self.state, generation):
            logger.debug("client.stale_retry_ignored", generation=generation)
            return
        self._retry_task = None
        await self.connect()

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _report_error(self, error: Exception) -> None:
        logger.warning("client.connection_error", url=self.url, error=str(error))
        self.state, due = error_notice_due(
            self.state,
            self._clock() * 1000,
            self.config.error_notice_interval_ms,
        )
        if due:
            self.notify(Notice(
                "Realtime connection issue",
                "We'll retry automatically in the background.",
            ))

    # ═══════════════════════════════════════════════════════
    # Outbound
    # ═══════════════════════════════════════════════════════

    async def send(self, event_type: str, data: Any = None) -> bool:
        """Send one frame; dropped with a warning when not open."""
        ws = self._ws
        if ws is None or self.state.phase is not Phase.OPEN:
            logger.warning("client.send_while_closed", type=event_type)
            return False
        await ws.send(encode(event_type, data))
        return True

    async def subscribe(self, ticket_id: Any) -> None:
        key = str(ticket_id)
        self._subscriptions.add(key)
        if self.is_connected:
            await self.send(SUBSCRIBE, {"ticketId": key})

    async def unsubscribe(self, ticket_id: Any) -> None:
        key = str(ticket_id)
        self._subscriptions.discard(key)
        if self.is_connected:
            await self.send(UNSUBSCRIBE, {"ticketId": key})

    # ═══════════════════════════════════════════════════════
    # Inbound pump
    # ═══════════════════════════════════════════════════════

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while True:
            raw = await self.inbound.get()
            try:
                self._dispatch(raw)
            finally:
                self.inbound.task_done()

    def _dispatch(self, raw: Any) -> None:
        try:
            event = decode(raw)
        except EnvelopeError as e:
            logger.warning("client.malformed_message", error=str(e))
            return

        result = None
        if self.router is not None:
            try:
                result = self.router.handle(event)
            except Exception:
                logger.exception("client.router_failed", type=event.type)
        if self.on_result is not None:
            try:
                self.on_result(event, result)
            except Exception:
                logger.exception("client.result_hook_failed", type=event.type)
