"""Event fan-out — turn one domain event into per-channel pushes.

Learn: publish() is synchronous and never awaits. It picks the
interested channels, serializes the envelope once, and drops it on
each channel's outbox. A per-channel writer task (drain) does the
actual socket writes. So:

1. The mutation path is never blocked by a slow browser.
2. One broken channel can't stop delivery to the others.
3. Frames reach a given channel in publish() order.

Routing policy by event type:

    ticket:created       staff roles + assignee + creator
    ticket:updated       subscribers of data.id + assignee
    ticket:comment       subscribers of data.ticketId + assignee
    ai:response          subscribers of data.ticketId + assignee
    knowledge:created    knowledge roles
    team:update          directory roles
    user:update          user-admin roles + the user themself
    system:notification  data.userIds if given, else everyone
    anything else        everyone

"Everyone" means every authenticated channel. Channels that haven't
finished the auth handshake never receive pushes.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

import structlog

from ticketflow.config import settings
from ticketflow.events import types as ev
from ticketflow.events.envelope import Event
from ticketflow.realtime.registry import Channel, ConnectionRegistry, resource_key

logger = structlog.get_logger()


class EventPublisher(Protocol):
    """Anything services can hand an event to (dispatcher or Redis relay)."""

    def publish(self, event: Event) -> Any: ...


@dataclass(frozen=True)
class Audience:
    """Who should receive an event.

    A channel matches if it is authenticated and any of: everyone is
    set, its role is in roles, its principal is in principals, or it is
    subscribed to resource.
    """

    roles: frozenset[str] = frozenset()
    principals: frozenset[str] = frozenset()
    resource: Optional[str] = None
    everyone: bool = False

    def matches(self, channel: Channel) -> bool:
        if not channel.is_authenticated:
            return False
        if self.everyone:
            return True
        if channel.role is not None and channel.role in self.roles:
            return True
        if channel.principal_id in self.principals:
            return True
        return self.resource is not None and self.resource in channel.subscriptions


def _ids(*values) -> frozenset[str]:
    return frozenset(str(v) for v in values if v not in (None, ""))


def _role_set(explicit: Optional[Iterable[str]], default: Iterable[str]) -> frozenset[str]:
    """An explicit empty list means no role-based broadcast."""
    return frozenset(default if explicit is None else explicit)


def _resource(value) -> Optional[str]:
    return resource_key(value) if value not in (None, "") else None


class EventDispatcher:
    """Routes events to channels held by a ConnectionRegistry."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        ticket_roles: Optional[Iterable[str]] = None,
        knowledge_roles: Optional[Iterable[str]] = None,
        directory_roles: Optional[Iterable[str]] = None,
        user_admin_roles: Optional[Iterable[str]] = None,
    ):
        self.registry = registry
        self.ticket_roles = _role_set(ticket_roles, settings.ticket_visible_roles)
        self.knowledge_roles = _role_set(knowledge_roles, settings.knowledge_visible_roles)
        self.directory_roles = _role_set(directory_roles, settings.directory_visible_roles)
        self.user_admin_roles = _role_set(user_admin_roles, settings.user_admin_roles)
        self._closing: set[asyncio.Task] = set()

        self._routes: dict[str, Callable[[dict], Audience]] = {
            ev.TICKET_CREATED: self._ticket_created,
            ev.TICKET_UPDATED: lambda d: self._ticket_scoped(d, d.get("id")),
            ev.TICKET_COMMENT: lambda d: self._ticket_scoped(d, d.get("ticketId")),
            ev.AI_RESPONSE: lambda d: self._ticket_scoped(d, d.get("ticketId")),
            ev.KNOWLEDGE_CREATED: lambda d: Audience(roles=self.knowledge_roles),
            ev.TEAM_UPDATE: lambda d: Audience(roles=self.directory_roles),
            ev.USER_UPDATE: lambda d: Audience(
                roles=self.user_admin_roles, principals=_ids(d.get("id"))
            ),
            ev.SYSTEM_NOTIFICATION: self._system_notification,
        }

    # ─── Routing ─────────────────────────────────────────

    def _ticket_created(self, data: dict) -> Audience:
        return Audience(
            roles=self.ticket_roles,
            principals=_ids(data.get("assigneeId"), data.get("createdBy")),
        )

    @staticmethod
    def _ticket_scoped(data: dict, ticket_id) -> Audience:
        return Audience(
            principals=_ids(data.get("assigneeId")),
            resource=_resource(ticket_id),
        )

    @staticmethod
    def _system_notification(data: dict) -> Audience:
        user_ids = data.get("userIds")
        if user_ids:
            return Audience(principals=_ids(*user_ids))
        return Audience(everyone=True)

    def audience_for(self, event: Event) -> Audience:
        data = event.data if isinstance(event.data, dict) else {}
        route = self._routes.get(event.type)
        if route is None:
            return Audience(everyone=True)
        return route(data)

    # ─── Publish ─────────────────────────────────────────

    def publish(self, event: Event) -> int:
        """Queue event on every interested channel. Returns how many.

        Never raises for delivery problems: a channel whose outbox is
        full is treated as disconnected and dropped.
        """
        try:
            frame = event.to_json()
        except (TypeError, ValueError):
            logger.exception("realtime.serialize_failed", type=event.type)
            return 0

        audience = self.audience_for(event)
        delivered = 0
        for channel in self.registry.channels_for(audience.matches):
            if channel.enqueue(frame):
                delivered += 1
            else:
                logger.warning("realtime.outbox_full", channel_id=channel.id)
                self.drop(channel)

        logger.debug("realtime.publish", type=event.type, channels=delivered)
        return delivered

    def drop(self, channel: Channel) -> None:
        """Unregister a channel and close its transport in the background."""
        if not self.registry.unregister(channel):
            return
        task = asyncio.get_running_loop().create_task(channel.close(code=1011))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # ─── Writer ──────────────────────────────────────────

    async def drain(self, channel: Channel) -> None:
        """Write a channel's outbox to its transport until cancelled.

        Learn: One writer per channel = one outbound stream = FIFO.
        A write error means the socket is dead; we unregister instead of
        retrying so the reader loop's finally block finds nothing left
        to clean up.
        """
        while True:
            frame = await channel.outbox.get()
            try:
                await channel.transport.send_text(frame)
            except Exception as e:
                logger.info("realtime.write_failed", channel_id=channel.id, error=str(e))
                self.registry.unregister(channel)
                await channel.close(code=1011)
                return
