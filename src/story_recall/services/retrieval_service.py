"""Retrieval entry points used by the HTTP API, the CLI and the writing pipeline."""

import math
from typing import Optional, Sequence

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from story_recall.config import StoryRecallConfig
from story_recall.repository.entity_repository import EntityRepository
from story_recall.repository.semantic_errors import EntityNotFoundError
from story_recall.repository.vector_store import ScanFilter
from story_recall.schemas.embedding import (
    DocumentRefreshReport,
    EmbeddingStatusResponse,
    EntityEvent,
    EntityEventType,
    KindEmbeddingStatus,
    RefreshFailure,
)
from story_recall.schemas.search import EntityKind, SearchPreviewResponse, SearchResult
from story_recall.services.hybrid_ranker import HybridRanker
from story_recall.sync.sync_orchestrator import SyncOrchestrator

PREVIEW_SUMMARY_LIMIT = 5


def _percentage(part: int, total: int) -> int:
    """Whole percentage rounded half up; 0 when there is nothing to count."""
    if total <= 0:
        return 0
    return math.floor(part / total * 100 + 0.5)


class RetrievalService:
    """Search, refresh and status operations scoped to one novel per call."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        orchestrator: SyncOrchestrator,
        ranker: HybridRanker,
        *,
        default_threshold: float = 0.3,
        card_top_k: int = 10,
        summary_top_k: int = 5,
    ):
        self.session_maker = session_maker
        self.orchestrator = orchestrator
        self.ranker = ranker
        self.entity_repository = EntityRepository(session_maker)
        self.default_threshold = default_threshold
        self.card_top_k = card_top_k
        self.summary_top_k = summary_top_k

    @classmethod
    def from_config(
        cls,
        session_maker: async_sessionmaker[AsyncSession],
        orchestrator: SyncOrchestrator,
        app_config: StoryRecallConfig,
    ) -> "RetrievalService":
        ranker = HybridRanker(
            orchestrator.provider,
            semantic_weight=app_config.search_semantic_weight,
            query_timeout=app_config.embedding_timeout,
        )
        return cls(
            session_maker,
            orchestrator,
            ranker,
            default_threshold=app_config.search_threshold,
            card_top_k=app_config.search_card_top_k,
            summary_top_k=app_config.search_summary_top_k,
        )

    async def _require_novel(self, novel_id: str) -> None:
        if await self.entity_repository.get_novel(novel_id) is None:
            raise EntityNotFoundError(f"Novel {novel_id} not found")

    async def search_cards(
        self,
        novel_id: str,
        query: str,
        *,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> list[SearchResult]:
        await self._require_novel(novel_id)
        category_values = [getattr(c, "value", c) for c in categories] if categories else None
        store = self.orchestrator.store_for(novel_id)
        candidates = await store.scan(EntityKind.CARD, ScanFilter(categories=category_values))
        return await self.ranker.rank(
            query,
            candidates,
            top_k=top_k or self.card_top_k,
            threshold=self.default_threshold if threshold is None else threshold,
        )

    async def search_summaries(
        self,
        novel_id: str,
        query: str,
        *,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        before_chapter_number: Optional[int] = None,
        before_chapter_id: Optional[str] = None,
    ) -> list[SearchResult]:
        """Rank chapter summaries, optionally only those before a chapter.

        The cutoff is applied to the candidate set before ranking, so later
        chapters can never crowd out earlier ones from ``top_k``.
        """
        await self._require_novel(novel_id)

        bound = before_chapter_number
        if before_chapter_id:
            chapter = await self.entity_repository.get_chapter(novel_id, before_chapter_id)
            if chapter is None:
                raise EntityNotFoundError(f"Chapter {before_chapter_id} not found")
            bound = chapter.number if bound is None else min(bound, chapter.number)

        store = self.orchestrator.store_for(novel_id)
        candidates = await store.scan(
            EntityKind.SUMMARY, ScanFilter(before_chapter_number=bound)
        )
        return await self.ranker.rank(
            query,
            candidates,
            top_k=top_k or self.summary_top_k,
            threshold=self.default_threshold if threshold is None else threshold,
        )

    async def search(
        self,
        novel_id: str,
        query: str,
        *,
        top_k: int = 5,
        current_chapter_id: Optional[str] = None,
    ) -> SearchPreviewResponse:
        """Combined preview: cards plus summaries of chapters before the current one."""
        cards = await self.search_cards(novel_id, query, top_k=top_k)
        summaries = await self.search_summaries(
            novel_id,
            query,
            top_k=min(top_k, PREVIEW_SUMMARY_LIMIT),
            before_chapter_id=current_chapter_id,
        )
        return SearchPreviewResponse(cards=cards, summaries=summaries)

    async def refresh_entity(
        self, kind: EntityKind, entity_id: str, *, novel_id: Optional[str] = None
    ) -> bool:
        """Schedule a background refresh of one card or summary.

        Raises:
            EntityNotFoundError: if the entity does not exist (in ``novel_id``, when given)
        """
        entity = await self.entity_repository.get_entity(kind, entity_id)
        if entity is None or (novel_id is not None and entity.novel_id != novel_id):
            raise EntityNotFoundError(f"{kind.value} {entity_id} not found")
        return self.orchestrator.schedule_refresh(kind, entity_id)

    async def refresh_document(
        self, novel_id: str, deadline: Optional[float] = None
    ) -> DocumentRefreshReport:
        return await self.orchestrator.refresh_document(novel_id, deadline=deadline)

    async def reindex_document(
        self, novel_id: str, deadline: Optional[float] = None
    ) -> DocumentRefreshReport:
        """Drop every stored embedding of a novel, then rebuild them all."""
        await self._require_novel(novel_id)
        removed = await self.orchestrator.store_for(novel_id).delete_all()
        logger.info(f"Re-indexing novel {novel_id}, dropped {removed} embedding records")
        return await self.orchestrator.refresh_document(novel_id, deadline=deadline)

    async def embedding_status(self, novel_id: str) -> EmbeddingStatusResponse:
        await self._require_novel(novel_id)
        store = self.orchestrator.store_for(novel_id)
        model_name = self.orchestrator.provider.model_name

        statuses = {}
        for kind in EntityKind:
            total, fresh, stale = await store.count_status(kind, model_name=model_name)
            statuses[kind] = KindEmbeddingStatus(
                total=total,
                with_embedding=fresh,
                stale=stale,
                percentage=_percentage(fresh, total),
            )
        return EmbeddingStatusResponse(
            cards=statuses[EntityKind.CARD], summaries=statuses[EntityKind.SUMMARY]
        )

    async def handle_entity_event(self, event: EntityEvent) -> bool:
        """React to a create, update or delete of a card or summary.

        Creates and updates schedule a refresh. Deletes drop the stored record;
        the row is usually gone already through the foreign key cascade.
        """
        if event.event == EntityEventType.DELETED:
            if event.novel_id:
                await self.orchestrator.store_for(event.novel_id).delete(
                    event.kind, event.entity_id
                )
            logger.debug(f"Dropped embedding for deleted {event.kind.value} {event.entity_id}")
            return True
        return self.orchestrator.schedule_refresh(event.kind, event.entity_id)

    def recent_failures(self, novel_id: Optional[str] = None) -> list[RefreshFailure]:
        return self.orchestrator.recent_failures(novel_id)
