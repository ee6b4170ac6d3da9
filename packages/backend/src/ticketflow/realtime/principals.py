"""Principal lookup for the WebSocket auth handshake.

Learn: The dispatcher gates global events by role, so a channel needs
a role as well as a user id. The handshake only carries the id; the
role comes from the users table. The resolver is injected on
app.state so WebSocket tests can swap in a static map.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketflow.db.models import User


@dataclass(frozen=True)
class Principal:
    id: str
    role: str


class PrincipalResolver(Protocol):
    async def __call__(self, user_id: str) -> Optional[Principal]: ...


class DatabasePrincipalResolver:
    """Resolve active users from the database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, user_id: str) -> Optional[Principal]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(User.id == user_id, User.is_active.is_(True))
            )
            user = result.scalars().first()
        if user is None:
            return None
        return Principal(id=user.id, role=user.role)
