"""Pydantic schemas for tickets, comments and AI draft replies.

Learn: Separate schemas for create/update/read keeps the API clean.
- TicketCreate: what you POST to open a ticket
- TicketUpdate: what you PATCH to modify a ticket (all optional)
- TicketRead: what the API returns
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

_STATUS = r"^(open|in_progress|on_hold|resolved|closed)$"
_PRIORITY = r"^(low|medium|high|urgent)$"


# ─── Tickets ─────────────────────────────────────────────

class TicketCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="")
    category: str = Field(default="support", max_length=50)
    priority: str = Field(default="medium", pattern=_PRIORITY)
    assignee_id: Optional[str] = None
    assignee_team_id: Optional[int] = None


class TicketUpdate(BaseModel):
    """Partial update — only fields present in the request are applied.

    Learn: assignee_id / assignee_team_id can be cleared by sending null,
    so the service uses model_fields_set instead of "is not None".
    """
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    status: Optional[str] = Field(None, pattern=_STATUS)
    priority: Optional[str] = Field(None, pattern=_PRIORITY)
    assignee_id: Optional[str] = None
    assignee_team_id: Optional[int] = None


class TicketRead(BaseModel):
    id: int
    ticket_number: str
    title: str
    description: str
    category: str
    status: str
    priority: str
    assignee_id: Optional[str]
    assignee_team_id: Optional[int]
    created_by: str
    resolved_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ─── Comments ────────────────────────────────────────────

class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class CommentRead(BaseModel):
    id: int
    ticket_id: int
    user_id: str
    content: str
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── AI draft replies ────────────────────────────────────

class AiResponseCreate(BaseModel):
    response: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)


class AiResponseRead(BaseModel):
    id: int
    ticket_id: int
    response: str
    confidence: float
    created_at: datetime

    model_config = {"from_attributes": True}
