"""Shared route dependencies."""

from fastapi import Request

from ticketflow.realtime.dispatcher import EventPublisher


def get_publisher(request: Request) -> EventPublisher:
    """The app's current event publisher (Redis relay or local dispatcher)."""
    return request.app.state.publisher
