"""Real-time infrastructure — connection registry, fan-out, WebSocket.

Learn: Events flow through three hops:
1. Services → publisher (Redis relay when available, else the dispatcher)
2. Dispatcher → per-channel outbox (routing by role, subscription, assignee)
3. Outbox → writer task → WebSocket → browser

This decouples event producers (services) from consumers (WebSocket clients).
"""
