"""WebSocket endpoint — real-time event delivery to browser clients.

Learn: Every client connects to the same path (settings.ws_path, "/ws").
The handler:
1. Accepts and registers an anonymous channel
2. Starts the channel's writer task (dispatcher.drain)
3. Reads client frames: auth, subscribe, unsubscribe, ping
4. Unregisters exactly once when the socket closes or errors

Bad frames are logged and dropped; they never close the connection.
A failed auth leaves the channel anonymous and sends an "error" frame.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ticketflow.auth.jwt import TokenError, verify_token
from ticketflow.config import settings
from ticketflow.events import types as ev
from ticketflow.events.envelope import EnvelopeError, decode, encode
from ticketflow.realtime.registry import Channel, ConnectionRegistry

logger = structlog.get_logger()
router = APIRouter()


@router.websocket(settings.ws_path)
async def realtime_websocket(websocket: WebSocket):
    """Long-lived channel: one per browser tab."""
    registry: ConnectionRegistry = websocket.app.state.registry
    dispatcher = websocket.app.state.dispatcher

    await websocket.accept()

    channel = Channel(websocket, outbox_size=settings.ws_outbox_size)
    registry.register(channel)
    structlog.contextvars.bind_contextvars(channel_id=channel.id)

    writer = asyncio.create_task(dispatcher.drain(channel))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # Binary frames go through the same decoder; bad bytes are malformed
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await _handle_frame(websocket, registry, channel, raw)
    except WebSocketDisconnect:
        pass
    finally:
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        registry.unregister(channel)
        channel.closed = True
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
        structlog.contextvars.unbind_contextvars("channel_id")


async def _handle_frame(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    channel: Channel,
    raw: Optional[str | bytes],
) -> None:
    try:
        message = decode(raw)
    except EnvelopeError as e:
        logger.warning("realtime.malformed_frame", error=str(e))
        return

    data = message.data if isinstance(message.data, dict) else {}

    if message.type == ev.AUTH:
        await _authenticate(websocket, registry, channel, data)
    elif message.type == ev.SUBSCRIBE:
        ticket_id = data.get("ticketId")
        if ticket_id is None:
            logger.warning("realtime.subscribe_without_ticket")
            return
        registry.subscribe(channel, ticket_id)
    elif message.type == ev.UNSUBSCRIBE:
        ticket_id = data.get("ticketId")
        if ticket_id is not None:
            registry.unsubscribe(channel, ticket_id)
    elif message.type == ev.PING:
        channel.enqueue(encode(ev.PONG))
    else:
        logger.info("realtime.unknown_client_message", type=message.type)


async def _authenticate(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    channel: Channel,
    data: dict,
) -> None:
    """Bind the channel to a principal.

    Learn: In development the userId is trusted as-is. Anywhere else a
    JWT is required — either ?token= on the upgrade URL or data.token —
    and its subject must match the claimed userId.
    """
    user_id = data.get("userId")
    if not user_id:
        _reject(channel, "userId is required")
        return
    user_id = str(user_id)

    token: Optional[str] = data.get("token") or websocket.query_params.get("token")
    if token:
        try:
            payload = verify_token(token)
        except TokenError as e:
            _reject(channel, str(e))
            return
        if payload.get("sub") != user_id:
            _reject(channel, "Token subject does not match userId")
            return
    elif settings.environment != "development":
        _reject(channel, "Authentication required")
        return

    resolver = websocket.app.state.principal_resolver
    principal = await resolver(user_id)
    if principal is None:
        _reject(channel, "Unknown user")
        return

    registry.authenticate(channel, principal.id, principal.role)
    channel.enqueue(encode(ev.CONNECTED, {
        "userId": principal.id,
        "message": "WebSocket connection established",
    }))


def _reject(channel: Channel, reason: str) -> None:
    logger.info("realtime.auth_rejected", channel_id=channel.id, reason=reason)
    channel.enqueue(encode(ev.ERROR, {"message": reason}))
