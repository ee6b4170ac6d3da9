"""Directory service — teams and users.

Learn: Teams and users change rarely but many screens cache them
(team pickers, member lists, role badges). Each change publishes a
team:update or user:update so those caches refresh everywhere.
"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.db.models import Team, User
from ticketflow.events.types import TEAM_UPDATE, USER_UPDATE
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.services.notify import publish_safely


class TeamNotFoundError(Exception):
    pass


class UserNotFoundError(Exception):
    pass


class DirectoryService:
    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher

    # ─── Teams ───────────────────────────────────────────

    async def create_team(
        self,
        name: str,
        description: str = "",
        created_by: Optional[str] = None,
    ) -> Team:
        team = Team(name=name, description=description, created_by=created_by)
        self.db.add(team)
        await self.db.commit()
        await self.db.refresh(team)

        publish_safely(self.publisher, TEAM_UPDATE, {
            "teamId": team.id,
            "name": team.name,
            "action": "created",
        })
        return team

    async def get_team(self, team_id: int) -> Optional[Team]:
        result = await self.db.execute(select(Team).where(Team.id == team_id))
        return result.scalars().first()

    async def update_team(self, team_id: int, fields: dict[str, Any]) -> Team:
        team = await self.get_team(team_id)
        if not team:
            raise TeamNotFoundError(f"Team {team_id} not found")

        changed = [k for k in ("name", "description") if k in fields and fields[k] is not None]
        for key in changed:
            setattr(team, key, fields[key])
        await self.db.commit()
        await self.db.refresh(team)

        if changed:
            publish_safely(self.publisher, TEAM_UPDATE, {
                "teamId": team.id,
                "name": team.name,
                "action": "updated",
                "fields": changed,
            })
        return team

    # ─── Users ───────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalars().first()

    async def update_user(self, user_id: str, fields: dict[str, Any]) -> User:
        """Update a user's name, role or active flag.

        Learn: A role change affects routing only for channels that
        authenticate afterwards; live channels keep the role they
        resolved at handshake until the browser reconnects.
        """
        user = await self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")

        changes = {}
        for key in ("name", "role", "is_active"):
            if key in fields and fields[key] is not None and fields[key] != getattr(user, key):
                setattr(user, key, fields[key])
                changes[key] = fields[key]
        await self.db.commit()
        await self.db.refresh(user)

        if changes:
            publish_safely(self.publisher, USER_UPDATE, {
                "id": user.id,
                "role": user.role,
                "changes": changes,
            })
        return user
