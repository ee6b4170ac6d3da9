"""TicketFlow — IT helpdesk backend with real-time fan-out.

Persists ticket, knowledge, team and user changes and pushes typed events
to every interested browser over a WebSocket channel. The bundled
``ticketflow.client`` package is the matching realtime client: reconnect
with backoff, duplicate suppression and query-cache invalidation.
"""

__version__ = "0.1.0"
