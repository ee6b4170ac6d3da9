"""Realtime client — reconnecting channel, backoff rules, cache invalidation.

Learn: The pieces a browser tab (or the `ticketflow listen` CLI) needs:
- backoff:  pure reconnect state machine
- channel:  the WebSocket connection that drives it
- router:   inbound event → stale query keys + user notices
- cache:    the query cache the router invalidates
"""

from ticketflow.client.backoff import Phase, ReconnectState, backoff_delay
from ticketflow.client.cache import QueryCache
from ticketflow.client.channel import ReconnectingChannel, ws_url_for
from ticketflow.client.config import ClientConfig
from ticketflow.client.notices import Notice
from ticketflow.client.router import HandleResult, InvalidationRouter

__all__ = [
    "ClientConfig",
    "HandleResult",
    "InvalidationRouter",
    "Notice",
    "Phase",
    "QueryCache",
    "ReconnectState",
    "ReconnectingChannel",
    "backoff_delay",
    "ws_url_for",
]
