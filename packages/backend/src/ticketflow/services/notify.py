"""Best-effort event publishing for services.

Learn: Services persist first, commit, and only then publish. The
notification is not part of the transaction: if publishing blows up,
the mutation has already succeeded and the request must still
succeed. Browsers catch up on their next refetch.
"""

from typing import Any, Optional

import structlog

from ticketflow.events.envelope import Event
from ticketflow.realtime.dispatcher import EventPublisher

logger = structlog.get_logger()


def publish_safely(
    publisher: Optional[EventPublisher],
    event_type: str,
    data: dict[str, Any],
) -> None:
    if publisher is None:
        return
    try:
        publisher.publish(Event(event_type, data))
    except Exception:
        logger.exception("realtime.publish_failed", type=event_type)
