"""Ticket API routes — tickets, comments, AI draft replies.

Learn: These routes are the HTTP side of the realtime pipeline.
Each one hands the request to TicketService, which commits and then
publishes the matching ticket:* / ai:response event. Routes just
translate HTTP to service calls and handle error responses.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.api.deps import get_publisher
from ticketflow.auth.dependencies import CurrentIdentity, get_current_user
from ticketflow.db.engine import get_db
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.schemas.ticket import (
    AiResponseCreate,
    AiResponseRead,
    CommentCreate,
    CommentRead,
    TicketCreate,
    TicketRead,
    TicketUpdate,
)
from ticketflow.services.ticket_service import TicketNotFoundError, TicketService

router = APIRouter()


def _ticket_svc(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> TicketService:
    return TicketService(db, publisher)


# ═══════════════════════════════════════════════════════════
# Tickets
# ═══════════════════════════════════════════════════════════


@router.post("/tickets", response_model=TicketRead, status_code=201)
async def create_ticket(
    body: TicketCreate,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: TicketService = Depends(_ticket_svc),
):
    """Open a new ticket (status 'open') and announce it."""
    return await svc.create_ticket(
        created_by=identity.user_id,
        title=body.title,
        description=body.description,
        category=body.category,
        priority=body.priority,
        assignee_id=body.assignee_id,
        assignee_team_id=body.assignee_team_id,
    )


@router.get("/tickets/{ticket_id}", response_model=TicketRead)
async def get_ticket(
    ticket_id: int,
    svc: TicketService = Depends(_ticket_svc),
):
    ticket = await svc.get_ticket(ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


@router.patch("/tickets/{ticket_id}", response_model=TicketRead)
async def update_ticket(
    ticket_id: int,
    body: TicketUpdate,
    svc: TicketService = Depends(_ticket_svc),
):
    """Partially update a ticket. Only fields sent in the body are touched."""
    fields = body.model_dump(include=body.model_fields_set)
    try:
        return await svc.update_ticket(ticket_id, fields)
    except TicketNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═══════════════════════════════════════════════════════════
# Comments
# ═══════════════════════════════════════════════════════════


@router.post("/tickets/{ticket_id}/comments", response_model=CommentRead, status_code=201)
async def add_comment(
    ticket_id: int,
    body: CommentCreate,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: TicketService = Depends(_ticket_svc),
):
    try:
        return await svc.add_comment(ticket_id, identity.user_id, body.content)
    except TicketNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/tickets/{ticket_id}/comments", response_model=list[CommentRead])
async def list_comments(
    ticket_id: int,
    svc: TicketService = Depends(_ticket_svc),
):
    try:
        return await svc.list_comments(ticket_id)
    except TicketNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═══════════════════════════════════════════════════════════
# AI draft replies
# ═══════════════════════════════════════════════════════════


@router.post("/tickets/{ticket_id}/ai-responses", response_model=AiResponseRead, status_code=201)
async def record_ai_response(
    ticket_id: int,
    body: AiResponseCreate,
    svc: TicketService = Depends(_ticket_svc),
):
    """Store a draft reply from the inference service.

    Learn: The inference worker calls this when a draft is ready; the
    ai:response event lets an agent looking at the ticket see it
    without reloading.
    """
    try:
        return await svc.record_ai_response(ticket_id, body.response, body.confidence)
    except TicketNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
