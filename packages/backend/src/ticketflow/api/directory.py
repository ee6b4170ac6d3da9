"""Team, user and knowledge routes."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.api.deps import get_publisher
from ticketflow.auth.dependencies import CurrentIdentity, get_current_user, require_roles
from ticketflow.config import settings
from ticketflow.db.engine import get_db
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.schemas.directory import (
    KnowledgeCreate,
    KnowledgeRead,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    UserRead,
    UserUpdate,
)
from ticketflow.services.directory_service import (
    DirectoryService,
    TeamNotFoundError,
    UserNotFoundError,
)
from ticketflow.services.knowledge_service import KnowledgeService

router = APIRouter()


def _directory_svc(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> DirectoryService:
    return DirectoryService(db, publisher)


def _knowledge_svc(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> KnowledgeService:
    return KnowledgeService(db, publisher)


# ─── Teams ───────────────────────────────────────────────


@router.post("/teams", response_model=TeamRead, status_code=201)
async def create_team(
    body: TeamCreate,
    identity: CurrentIdentity = Depends(require_roles("admin", "manager")),
    svc: DirectoryService = Depends(_directory_svc),
):
    return await svc.create_team(body.name, body.description, created_by=identity.user_id)


@router.patch("/teams/{team_id}", response_model=TeamRead)
async def update_team(
    team_id: int,
    body: TeamUpdate,
    _: CurrentIdentity = Depends(require_roles("admin", "manager")),
    svc: DirectoryService = Depends(_directory_svc),
):
    try:
        return await svc.update_team(team_id, body.model_dump(exclude_unset=True))
    except TeamNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ─── Users ───────────────────────────────────────────────


@router.get("/users/{user_id}", response_model=UserRead)
async def get_user(
    user_id: str,
    svc: DirectoryService = Depends(_directory_svc),
):
    user = await svc.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/users/{user_id}", response_model=UserRead)
async def update_user(
    user_id: str,
    body: UserUpdate,
    _: CurrentIdentity = Depends(require_roles(*settings.user_admin_roles)),
    svc: DirectoryService = Depends(_directory_svc),
):
    try:
        return await svc.update_user(user_id, body.model_dump(exclude_unset=True))
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ─── Knowledge ───────────────────────────────────────────


@router.post("/knowledge", response_model=KnowledgeRead, status_code=201)
async def create_article(
    body: KnowledgeCreate,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: KnowledgeService = Depends(_knowledge_svc),
):
    return await svc.create_article(
        title=body.title,
        content=body.content,
        category=body.category,
        source_ticket_id=body.source_ticket_id,
        created_by=identity.user_id,
    )


@router.get("/knowledge/{article_id}", response_model=KnowledgeRead)
async def get_article(
    article_id: int,
    svc: KnowledgeService = Depends(_knowledge_svc),
):
    article = await svc.get_article(article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article
