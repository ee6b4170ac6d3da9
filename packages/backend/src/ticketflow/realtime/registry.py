"""Connection registry — live WebSocket channels and who they belong to.

Learn: The registry is the only mutable state shared between the
WebSocket handlers and the dispatcher. Everything runs on one asyncio
event loop and no method awaits while it mutates the channel map, so
register/unregister/publish can interleave freely without a lock.

It is an injected component (one per app instance, stored on
app.state), never a module-level global, so tests can build isolated
registries.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Iterator, Optional, Protocol

import structlog

from ticketflow.events.envelope import utcnow

logger = structlog.get_logger()


class Transport(Protocol):
    """The slice of a WebSocket the registry needs (Starlette's fits)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class Channel:
    """One live duplex connection.

    Learn: Outbound frames never go straight to the socket. They are
    queued on the channel's outbox and a single writer task drains it,
    which gives FIFO delivery per channel and keeps publish() from
    ever awaiting a slow client.
    """

    def __init__(
        self,
        transport: Transport,
        outbox_size: int = 256,
        channel_id: Optional[str] = None,
    ):
        self.id = channel_id or uuid.uuid4().hex
        self.transport = transport
        self.principal_id: Optional[str] = None
        self.role: Optional[str] = None
        self.created_at: datetime = utcnow()
        self.subscriptions: set[str] = set()
        self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=outbox_size)
        self.closed = False

    @property
    def is_authenticated(self) -> bool:
        return self.principal_id is not None

    def enqueue(self, frame: str) -> bool:
        """Queue a serialized envelope. False if closed or the outbox is full."""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.transport.close(code=code)
        except Exception as e:
            # Peer already closed
            logger.debug("realtime.channel_close_failed", channel_id=self.id, error=str(e))

    def __repr__(self) -> str:
        return f"<Channel {self.id} principal={self.principal_id!r}>"


def resource_key(resource_id) -> str:
    """Normalize resource ids so 42 and "42" address the same ticket."""
    return str(resource_id)


class ConnectionRegistry:
    """Tracks live channels plus their principal and subscriptions."""

    def __init__(self):
        self._channels: dict[str, Channel] = {}

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel: Channel) -> bool:
        return channel.id in self._channels

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._channels.get(channel_id)

    # ─── Lifecycle ───────────────────────────────────────

    def register(self, channel: Channel) -> None:
        """Add a channel in the unauthenticated state."""
        self._channels[channel.id] = channel
        logger.info("realtime.channel_registered", channel_id=channel.id, total=len(self))

    def unregister(self, channel: Channel) -> bool:
        """Remove a channel and all of its subscriptions.

        Safe to call more than once: the close and error paths of a
        transport can both fire. Returns True only for the call that
        actually removed it.
        """
        removed = self._channels.pop(channel.id, None)
        channel.subscriptions.clear()
        if removed is None:
            return False
        logger.info(
            "realtime.channel_unregistered",
            channel_id=channel.id,
            principal_id=channel.principal_id,
            total=len(self),
        )
        return True

    async def shutdown(self) -> None:
        """Close every live channel (app shutdown)."""
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            channel.subscriptions.clear()
            await channel.close(code=1001)
        logger.info("realtime.registry_shutdown", closed=len(channels))

    # ─── Principal + subscriptions ───────────────────────

    def authenticate(
        self,
        channel: Channel,
        principal_id: str,
        role: Optional[str] = None,
    ) -> bool:
        """Bind a principal to a channel.

        Same principal again is a no-op. A different principal replaces
        the first one (last write wins).
        """
        if channel.id not in self._channels:
            return False

        if channel.principal_id == principal_id:
            if role is not None:
                channel.role = role
            return True

        if channel.principal_id is not None:
            logger.warning(
                "realtime.principal_replaced",
                channel_id=channel.id,
                previous=channel.principal_id,
                principal_id=principal_id,
            )
        channel.principal_id = principal_id
        channel.role = role
        logger.info(
            "realtime.channel_authenticated",
            channel_id=channel.id,
            principal_id=principal_id,
            role=role,
        )
        return True

    def subscribe(self, channel: Channel, resource_id) -> None:
        if channel.id not in self._channels:
            return
        channel.subscriptions.add(resource_key(resource_id))

    def unsubscribe(self, channel: Channel, resource_id) -> None:
        if channel.id not in self._channels:
            return
        channel.subscriptions.discard(resource_key(resource_id))

    # ─── Queries ─────────────────────────────────────────

    def channels_for(self, predicate: Callable[[Channel], bool]) -> Iterator[Channel]:
        """Lazily yield live channels matching predicate.

        Iterates over a snapshot, so a channel unregistered while the
        caller is consuming the generator is skipped rather than raising
        "dict changed size during iteration". Each call starts over.
        """
        for channel in list(self._channels.values()):
            if channel.id in self._channels and predicate(channel):
                yield channel

    def channels_of(self, principal_id: str) -> Iterator[Channel]:
        return self.channels_for(lambda c: c.principal_id == principal_id)

    def stats(self) -> dict[str, int]:
        channels = list(self._channels.values())
        return {
            "channels": len(channels),
            "authenticated": sum(1 for c in channels if c.is_authenticated),
            "subscriptions": sum(len(c.subscriptions) for c in channels),
        }
