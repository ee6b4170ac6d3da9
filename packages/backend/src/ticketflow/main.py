"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. The realtime components are built here and hung on app.state:

    app.state.registry            ConnectionRegistry (live channels)
    app.state.dispatcher          EventDispatcher over that registry
    app.state.publisher           what services publish to
    app.state.principal_resolver  user id → (id, role) for WS auth

Each app gets its own registry, so tests never share channels.
Lifespan manages startup/shutdown (Redis relay, channels, database).
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketflow import __version__
from ticketflow.api import api_router
from ticketflow.config import settings
from ticketflow.db.engine import async_session_factory
from ticketflow.realtime.dispatcher import EventDispatcher
from ticketflow.realtime.principals import DatabasePrincipalResolver
from ticketflow.realtime.registry import ConnectionRegistry

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs
    at shutdown. Redis is optional: without it the app publishes to the
    local dispatcher and real-time still works within one process.
    """
    logger.info(
        "ticketflow.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from ticketflow.realtime.pubsub import RedisEventRelay, close_redis, init_redis

    relay_task = None
    if settings.redis_url:
        try:
            redis = await init_redis()
            relay = RedisEventRelay(redis, app.state.dispatcher)
            app.state.publisher = relay
            relay_task = asyncio.create_task(relay.run())
            logger.info("ticketflow.redis_connected", url=settings.redis_url)
        except Exception as e:
            logger.warning("ticketflow.redis_unavailable", error=str(e))

    yield

    # Shutdown
    logger.info("ticketflow.shutdown")

    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        app.state.publisher = app.state.dispatcher

    await app.state.registry.shutdown()
    await close_redis()

    from ticketflow.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="TicketFlow",
        description="IT helpdesk backend with real-time WebSocket fan-out",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Realtime components ──────────────────────────────────
    registry = ConnectionRegistry()
    dispatcher = EventDispatcher(registry)
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.publisher = dispatcher
    app.state.principal_resolver = DatabasePrincipalResolver(async_session_factory)

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → RateLimit → CORS → handler

    from ticketflow.middleware.rate_limit import RateLimitMiddleware
    from ticketflow.middleware.request_id import RequestIdMiddleware
    from ticketflow.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware, rpm=settings.rate_limit_rpm)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route
    from ticketflow.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: ticketflow.main:app)
app = create_app()
