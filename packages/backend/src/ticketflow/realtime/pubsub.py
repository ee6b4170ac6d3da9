"""Redis pub/sub — cross-process event relay.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for real-time UI updates (the frontend can always query
the API to catch up).

With several uvicorn workers, a mutation handled by worker A must reach
browsers connected to worker B. So when Redis is up, services publish
to one Redis channel and every worker's relay feeds what it hears into
its own local dispatcher. Without Redis, services publish straight to
the local dispatcher.

Channel naming: ticketflow:events (settings.realtime_channel)
"""

import asyncio
from typing import Optional

import redis.asyncio as aioredis
import structlog

from ticketflow.config import settings
from ticketflow.events.envelope import EnvelopeError, Event, decode
from ticketflow.realtime.dispatcher import EventDispatcher

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


class RedisEventRelay:
    """Publish through Redis, deliver through the local dispatcher."""

    def __init__(
        self,
        redis: aioredis.Redis,
        dispatcher: EventDispatcher,
        channel: Optional[str] = None,
    ):
        self.redis = redis
        self.dispatcher = dispatcher
        self.channel = channel or settings.realtime_channel
        self._pending: set[asyncio.Task] = set()

    def publish(self, event: Event) -> None:
        """Fire-and-forget: the caller never waits on Redis."""
        task = asyncio.get_running_loop().create_task(self._publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event: Event) -> None:
        try:
            await self.redis.publish(self.channel, event.to_json())
        except Exception as e:
            # Redis went away; still reach this worker's own clients
            logger.warning("realtime.relay_publish_failed", type=event.type, error=str(e))
            self.dispatcher.publish(event)

    async def flush(self) -> None:
        """Wait for in-flight publishes (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def run(self) -> None:
        """Forward every relayed event to the local dispatcher until cancelled."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("realtime.relay_listening", channel=self.channel)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    event = decode(message["data"])
                except EnvelopeError as e:
                    logger.warning("realtime.relay_malformed", error=str(e))
                    continue
                self.dispatcher.publish(event)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
