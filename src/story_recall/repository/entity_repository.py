"""Read access to the novel-side entities that own embeddable text."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from story_recall import db
from story_recall.models import Card, Chapter, ChapterSummary, Novel
from story_recall.repository.semantic_errors import StoreUnavailableError
from story_recall.schemas.search import EntityKind


class EntityRepository:
    """Lookups for novels, chapters, cards and chapter summaries.

    Entities are written by the CRUD layer; this repository never mutates them.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _scalar(self, query):
        try:
            async with db.scoped_session(self.session_maker) as session:
                result = await session.execute(query)
                return result.scalars().first()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Entity lookup failed: {exc}") from exc

    async def _scalars(self, query) -> list:
        try:
            async with db.scoped_session(self.session_maker) as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Entity lookup failed: {exc}") from exc

    async def get_novel(self, novel_id: str) -> Optional[Novel]:
        return await self._scalar(select(Novel).where(Novel.id == novel_id))

    async def list_novel_ids(self) -> list[str]:
        return await self._scalars(select(Novel.id).order_by(Novel.created_at, Novel.id))

    async def get_chapter(self, novel_id: str, chapter_id: str) -> Optional[Chapter]:
        query = select(Chapter).where(Chapter.id == chapter_id, Chapter.novel_id == novel_id)
        return await self._scalar(query)

    async def get_card(self, card_id: str) -> Optional[Card]:
        return await self._scalar(select(Card).where(Card.id == card_id))

    async def get_summary(self, summary_id: str) -> Optional[ChapterSummary]:
        query = (
            select(ChapterSummary)
            .where(ChapterSummary.id == summary_id)
            .options(selectinload(ChapterSummary.chapter))
        )
        return await self._scalar(query)

    async def get_entity(self, kind: EntityKind, entity_id: str) -> Optional[Card | ChapterSummary]:
        """Load a card or summary by kind."""
        if kind == EntityKind.CARD:
            return await self.get_card(entity_id)
        return await self.get_summary(entity_id)
