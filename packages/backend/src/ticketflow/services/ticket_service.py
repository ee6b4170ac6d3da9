"""Ticket service — persistence plus realtime events for tickets.

Learn: Every mutation follows the same shape:
1. Load and validate
2. Apply the change and commit
3. Publish a typed event (best-effort, after the commit)

Event payloads use the camelCase keys the browser client reads:
ticket:created carries assigneeId so the assignee gets a notice,
ticket:updated carries changes.status so "resolved" can be announced,
and every ticket event carries ticketNumber for display.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.config import settings
from ticketflow.db.models import AiResponse, Ticket, TicketComment
from ticketflow.events.types import (
    AI_RESPONSE,
    TICKET_COMMENT,
    TICKET_CREATED,
    TICKET_UPDATED,
)
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.services.notify import publish_safely


class TicketNotFoundError(Exception):
    """Raised when a ticket id doesn't exist."""
    pass


# Ticket fields → event "changes" keys
_CHANGE_KEYS = {
    "title": "title",
    "description": "description",
    "category": "category",
    "status": "status",
    "priority": "priority",
    "assignee_id": "assigneeId",
}


def format_ticket_number(prefix: str, year: int, seq: int) -> str:
    return f"{prefix}-{year}-{seq:04d}"


class TicketService:
    """Business logic for tickets, comments and AI draft replies."""

    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher

    # ─── Numbering ───────────────────────────────────────

    async def next_ticket_number(self, year: Optional[int] = None) -> str:
        """Next TKT-YYYY-NNNN number for the year.

        Learn: The highest existing number for the year wins, so gaps
        (deleted tickets) are never reused.
        """
        year = year or datetime.now(timezone.utc).year
        prefix = settings.ticket_prefix
        result = await self.db.execute(
            select(Ticket.ticket_number)
            .where(Ticket.ticket_number.like(f"{prefix}-{year}-%"))
            .order_by(Ticket.ticket_number.desc())
            .limit(1)
        )
        last = result.scalars().first()
        seq = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return format_ticket_number(prefix, year, seq)

    # ─── Create ──────────────────────────────────────────

    async def create_ticket(
        self,
        created_by: str,
        title: str,
        description: str = "",
        category: str = "support",
        priority: str = "medium",
        assignee_id: Optional[str] = None,
        assignee_team_id: Optional[int] = None,
    ) -> Ticket:
        ticket = Ticket(
            ticket_number=await self.next_ticket_number(),
            title=title,
            description=description,
            category=category,
            priority=priority,
            status="open",
            assignee_id=assignee_id,
            assignee_team_id=assignee_team_id,
            created_by=created_by,
        )
        self.db.add(ticket)
        await self.db.commit()
        await self.db.refresh(ticket)

        publish_safely(self.publisher, TICKET_CREATED, {
            "id": ticket.id,
            "ticketNumber": ticket.ticket_number,
            "title": ticket.title,
            "assigneeType": "team" if assignee_team_id and not assignee_id else "user",
            "assigneeId": ticket.assignee_id,
            "assigneeTeamId": ticket.assignee_team_id,
            "createdBy": ticket.created_by,
        })
        return ticket

    # ─── Read ────────────────────────────────────────────

    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        result = await self.db.execute(
            select(Ticket).where(Ticket.id == ticket_id)
        )
        return result.scalars().first()

    async def _require(self, ticket_id: int) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if not ticket:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    # ─── Update ──────────────────────────────────────────

    async def update_ticket(self, ticket_id: int, fields: dict[str, Any]) -> Ticket:
        """Apply a partial update and announce what changed.

        Learn: Only real changes are reported. A PATCH that sets a field
        to its current value publishes nothing.
        """
        ticket = await self._require(ticket_id)

        changes: dict[str, Any] = {}
        for name, key in _CHANGE_KEYS.items():
            if name in fields and fields[name] != getattr(ticket, name):
                setattr(ticket, name, fields[name])
                changes[key] = fields[name]

        if "assignee_team_id" in fields and fields["assignee_team_id"] != ticket.assignee_team_id:
            changes["assigneeTeamId"] = {
                "old": ticket.assignee_team_id,
                "new": fields["assignee_team_id"],
            }
            ticket.assignee_team_id = fields["assignee_team_id"]

        if changes.get("status") == "resolved":
            ticket.resolved_at = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(ticket)

        if changes:
            publish_safely(self.publisher, TICKET_UPDATED, {
                "id": ticket.id,
                "ticketNumber": ticket.ticket_number,
                "changes": changes,
                "assigneeId": ticket.assignee_id,
                "assigneeTeamId": ticket.assignee_team_id,
            })
        return ticket

    # ─── Comments ────────────────────────────────────────

    async def add_comment(self, ticket_id: int, user_id: str, content: str) -> TicketComment:
        """Add a comment.

        Learn: isReply is true when someone other than the requester
        comments — that's the case the requester's browser announces.
        """
        ticket = await self._require(ticket_id)
        comment = TicketComment(ticket_id=ticket.id, user_id=user_id, content=content)
        self.db.add(comment)
        await self.db.commit()
        await self.db.refresh(comment)

        publish_safely(self.publisher, TICKET_COMMENT, {
            "ticketId": ticket.id,
            "ticketNumber": ticket.ticket_number,
            "commentId": comment.id,
            "authorId": user_id,
            "isReply": user_id != ticket.created_by,
            "assigneeId": ticket.assignee_id,
        })
        return comment

    async def list_comments(self, ticket_id: int) -> list[TicketComment]:
        await self._require(ticket_id)
        result = await self.db.execute(
            select(TicketComment)
            .where(TicketComment.ticket_id == ticket_id)
            .order_by(TicketComment.id)
        )
        return list(result.scalars().all())

    # ─── AI draft replies ────────────────────────────────

    async def record_ai_response(
        self,
        ticket_id: int,
        response: str,
        confidence: float,
    ) -> AiResponse:
        ticket = await self._require(ticket_id)
        ai = AiResponse(ticket_id=ticket.id, response=response, confidence=confidence)
        self.db.add(ai)
        await self.db.commit()
        await self.db.refresh(ai)

        publish_safely(self.publisher, AI_RESPONSE, {
            "ticketId": ticket.id,
            "ticketNumber": ticket.ticket_number,
            "responseId": ai.id,
            "confidence": ai.confidence,
            "assigneeId": ticket.assignee_id,
        })
        return ai
