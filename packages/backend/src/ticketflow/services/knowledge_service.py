"""Knowledge base service — article creation."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.db.models import KnowledgeArticle
from ticketflow.events.types import KNOWLEDGE_CREATED
from ticketflow.realtime.dispatcher import EventPublisher
from ticketflow.services.notify import publish_safely


class KnowledgeService:
    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher

    async def create_article(
        self,
        title: str,
        content: str,
        category: str = "general",
        source_ticket_id: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> KnowledgeArticle:
        """Create an article.

        source_ticket_id marks articles learned from a resolved ticket;
        browsers announce those.
        """
        article = KnowledgeArticle(
            title=title,
            content=content,
            category=category,
            source_ticket_id=source_ticket_id,
            created_by=created_by,
        )
        self.db.add(article)
        await self.db.commit()
        await self.db.refresh(article)

        publish_safely(self.publisher, KNOWLEDGE_CREATED, {
            "id": article.id,
            "title": article.title,
            "category": article.category,
            "sourceTicketId": article.source_ticket_id,
        })
        return article

    async def get_article(self, article_id: int) -> Optional[KnowledgeArticle]:
        result = await self.db.execute(
            select(KnowledgeArticle).where(KnowledgeArticle.id == article_id)
        )
        return result.scalars().first()
