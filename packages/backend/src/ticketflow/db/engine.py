"""Database engine, session factory and the per-request session dependency.

Learn: One async engine per process. Tickets, comments and directory
rows are written through AsyncSession; the WebSocket handshake reuses
the same factory to look up the connecting principal's role.

Postgres (asyncpg) is the deployment target. A sqlite+aiosqlite URL is
accepted for local hacking, which is why pool sizing is only passed to
drivers that pool.
"""

from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ticketflow.config import settings


def build_engine(url: str) -> AsyncEngine:
    options: dict[str, Any] = {"echo": settings.debug}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


engine = build_engine(settings.database_url)

# expire_on_commit=False: services format rows for events after commit
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request, rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
