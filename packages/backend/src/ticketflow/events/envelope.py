"""Wire envelope — the flat JSON object both directions agree on.

Learn: Every frame is {"type": str, "data": any, "timestamp": ISO-8601}.
Event is frozen: once a mutation builds it, nobody downstream can
change what other channels will see.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class EnvelopeError(ValueError):
    """Raised when an inbound frame is not a valid envelope."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """An immutable, typed description of a state change."""

    type: str
    data: Any = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_envelope(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_envelope(), default=str)


def encode(event_type: str, data: Any = None) -> str:
    """Serialize a one-off frame (acks, pongs, client commands)."""
    return Event(event_type, data if data is not None else {}).to_json()


def decode(raw: str | bytes) -> Event:
    """Parse a frame into an Event.

    Accepts the legacy flat form ({"type": "auth", "userId": ...}) by
    folding unknown top-level keys into data when "data" is absent.
    """
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EnvelopeError(f"Invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise EnvelopeError("Envelope must be a JSON object")
    event_type = obj.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise EnvelopeError("Envelope is missing a string 'type'")

    if "data" in obj:
        data = obj["data"]
    else:
        data = {k: v for k, v in obj.items() if k not in ("type", "timestamp")}

    return Event(event_type, data, _parse_timestamp(obj.get("timestamp")))


def _parse_timestamp(value: Optional[Any]) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()
