"""Pydantic schemas for teams, users, knowledge articles and notifications."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

_ROLE = r"^(admin|manager|agent|customer)$"


# ─── Teams ───────────────────────────────────────────────

class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="")


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class TeamRead(BaseModel):
    id: int
    name: str
    description: str
    created_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Users ───────────────────────────────────────────────

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    role: Optional[str] = Field(None, pattern=_ROLE)
    is_active: Optional[bool] = None


class UserRead(BaseModel):
    id: str
    email: str
    name: str
    role: str
    is_active: bool

    model_config = {"from_attributes": True}


# ─── Knowledge ───────────────────────────────────────────

class KnowledgeCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    category: str = Field(default="general", max_length=50)
    source_ticket_id: Optional[int] = None


class KnowledgeRead(BaseModel):
    id: int
    title: str
    content: str
    category: str
    source_ticket_id: Optional[int]
    created_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── System notifications ────────────────────────────────

class NotificationCreate(BaseModel):
    """Broadcast a notice to connected browsers (everyone, or user_ids)."""
    title: str = Field(default="System notification", max_length=200)
    message: str = Field(..., min_length=1)
    variant: str = Field(default="default", pattern=r"^(default|destructive)$")
    user_ids: list[str] = Field(default_factory=list)


class NotificationRead(BaseModel):
    delivered: bool
