"""Novel-scoped storage and scanning of embedding records.

A ``VectorStore`` is bound to exactly one novel, the same way search
repositories are bound to a project: every statement it builds carries the
novel id, so a scan can never see another novel's entities or vectors.

Vectors are stored as given. Cosine similarity L2-normalizes both sides at
read time (see ``cosine_similarity``).
"""

import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

from loguru import logger
from sqlalchemy import and_, delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from story_recall import db
from story_recall.models import Card, CardEmbedding, Chapter, ChapterSummary, ChapterSummaryEmbedding
from story_recall.repository.embedding_record import Candidate, EmbeddingRecord
from story_recall.repository.semantic_errors import StoreUnavailableError
from story_recall.schemas.search import EntityKind
from story_recall.services.staleness import is_fresh_digest
from story_recall.services.text_normalizer import content_digest, normalize_card, normalize_summary

EMBEDDING_MODELS = {
    EntityKind.CARD: CardEmbedding,
    EntityKind.SUMMARY: ChapterSummaryEmbedding,
}


@dataclass(frozen=True)
class ScanFilter:
    """Optional narrowing applied inside the scan query.

    ``before_chapter_number`` only applies to summaries and keeps chapters
    numbered strictly below it.
    """

    categories: Optional[Sequence[str]] = None
    entity_ids: Optional[Sequence[str]] = None
    before_chapter_number: Optional[int] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def l2_normalize(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return [0.0 for _ in vector]
    return [value / norm for value in vector]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Dot product of the L2-normalized vectors; 0.0 for zero or mismatched vectors."""
    if len(left) != len(right) or not left:
        return 0.0
    return sum(a * b for a, b in zip(l2_normalize(left), l2_normalize(right)))


class VectorStore:
    """Embedding records and candidate scans for one novel."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], novel_id: str):
        if not novel_id:
            raise ValueError("VectorStore requires a novel id")
        self.session_maker = session_maker
        self.novel_id = novel_id

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with db.scoped_session(self.session_maker) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error(f"Vector store {operation} failed for novel {self.novel_id}: {exc}")
            raise StoreUnavailableError(f"Vector store {operation} failed: {exc}") from exc

    def _to_record(self, kind: EntityKind, row) -> EmbeddingRecord:
        return EmbeddingRecord(
            entity_id=row.entity_id,
            kind=kind,
            novel_id=row.novel_id,
            vector=[float(value) for value in row.vector],
            content_digest=row.content_digest,
            generated_at=as_utc(row.generated_at),
            model_name=row.model_name,
        )

    async def upsert(self, record: EmbeddingRecord) -> None:
        """Insert or wholly replace the record for (kind, entity id)."""
        if record.novel_id != self.novel_id:
            raise ValueError(
                f"Record for novel {record.novel_id} cannot be written to store for {self.novel_id}"
            )

        model = EMBEDDING_MODELS[record.kind]
        values = {
            "entity_id": record.entity_id,
            "novel_id": record.novel_id,
            "vector": list(record.vector),
            "dimensions": record.dimensions,
            "model_name": record.model_name,
            "content_digest": record.content_digest,
            "generated_at": record.generated_at,
        }
        stmt = sqlite_insert(model).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_id"],
            set_={
                "novel_id": stmt.excluded.novel_id,
                "vector": stmt.excluded.vector,
                "dimensions": stmt.excluded.dimensions,
                "model_name": stmt.excluded.model_name,
                "content_digest": stmt.excluded.content_digest,
                "generated_at": stmt.excluded.generated_at,
            },
        )
        async with self._session("upsert") as session:
            await session.execute(stmt)
        logger.debug(f"Upserted {record.kind.value} embedding {record.entity_id}")

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[EmbeddingRecord]:
        model = EMBEDDING_MODELS[kind]
        query = select(model).where(model.entity_id == entity_id, model.novel_id == self.novel_id)
        async with self._session("get") as session:
            result = await session.execute(query)
            row = result.scalars().first()
        return self._to_record(kind, row) if row is not None else None

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        model = EMBEDDING_MODELS[kind]
        stmt = delete(model).where(model.entity_id == entity_id, model.novel_id == self.novel_id)
        async with self._session("delete") as session:
            result = await session.execute(stmt)
        return bool(result.rowcount)

    async def delete_all(self, kind: Optional[EntityKind] = None) -> int:
        """Drop every record of this novel (optionally of one kind)."""
        kinds = [kind] if kind is not None else list(EntityKind)
        removed = 0
        async with self._session("delete_all") as session:
            for item in kinds:
                model = EMBEDDING_MODELS[item]
                result = await session.execute(delete(model).where(model.novel_id == self.novel_id))
                removed += result.rowcount or 0
        logger.info(f"Removed {removed} embedding records for novel {self.novel_id}")
        return removed

    async def scan(
        self, kind: EntityKind, scan_filter: Optional[ScanFilter] = None
    ) -> list[Candidate]:
        """Return every entity of ``kind`` in this novel with its stored record, if any."""
        scan_filter = scan_filter or ScanFilter()
        if kind == EntityKind.CARD:
            return await self._scan_cards(scan_filter)
        return await self._scan_summaries(scan_filter)

    async def count_status(
        self, kind: EntityKind, *, model_name: Optional[str] = None
    ) -> tuple[int, int, int]:
        """Return ``(total, fresh, stale)`` for one entity kind of this novel.

        Entities without any record count toward ``total`` only.
        """
        candidates = await self.scan(kind)
        fresh = stale = 0
        for candidate in candidates:
            if candidate.record is None:
                continue
            if is_fresh_digest(candidate.content_digest, candidate.record, model_name=model_name):
                fresh += 1
            else:
                stale += 1
        return len(candidates), fresh, stale

    async def _scan_cards(self, scan_filter: ScanFilter) -> list[Candidate]:
        query = (
            select(Card, CardEmbedding)
            .outerjoin(
                CardEmbedding,
                and_(CardEmbedding.entity_id == Card.id, CardEmbedding.novel_id == self.novel_id),
            )
            .where(Card.novel_id == self.novel_id)
            .order_by(Card.sort_order, Card.id)
        )
        if scan_filter.categories:
            query = query.where(Card.category.in_(list(scan_filter.categories)))
        if scan_filter.entity_ids is not None:
            query = query.where(Card.id.in_(list(scan_filter.entity_ids)))

        async with self._session("scan") as session:
            rows = (await session.execute(query)).all()

        candidates: list[Candidate] = []
        for card, embedding in rows:
            text_value = normalize_card(card)
            candidates.append(
                Candidate(
                    entity_id=card.id,
                    kind=EntityKind.CARD,
                    novel_id=card.novel_id,
                    normalized_text=text_value,
                    content_digest=content_digest(text_value),
                    record=self._to_record(EntityKind.CARD, embedding) if embedding else None,
                    is_pinned=bool(card.is_pinned),
                    updated_at=as_utc(card.updated_at),
                    display={
                        "name": card.name,
                        "category": card.category,
                        "description": card.description,
                    },
                )
            )
        return candidates

    async def _scan_summaries(self, scan_filter: ScanFilter) -> list[Candidate]:
        query = (
            select(ChapterSummary, Chapter, ChapterSummaryEmbedding)
            .join(Chapter, Chapter.id == ChapterSummary.chapter_id)
            .outerjoin(
                ChapterSummaryEmbedding,
                and_(
                    ChapterSummaryEmbedding.entity_id == ChapterSummary.id,
                    ChapterSummaryEmbedding.novel_id == self.novel_id,
                ),
            )
            .where(ChapterSummary.novel_id == self.novel_id, Chapter.novel_id == self.novel_id)
            .order_by(Chapter.number)
        )
        if scan_filter.before_chapter_number is not None:
            query = query.where(Chapter.number < scan_filter.before_chapter_number)
        if scan_filter.entity_ids is not None:
            query = query.where(ChapterSummary.id.in_(list(scan_filter.entity_ids)))

        async with self._session("scan") as session:
            rows = (await session.execute(query)).all()

        candidates: list[Candidate] = []
        for summary, chapter, embedding in rows:
            text_value = normalize_summary(summary)
            candidates.append(
                Candidate(
                    entity_id=summary.id,
                    kind=EntityKind.SUMMARY,
                    novel_id=summary.novel_id,
                    normalized_text=text_value,
                    content_digest=content_digest(text_value),
                    record=self._to_record(EntityKind.SUMMARY, embedding) if embedding else None,
                    updated_at=as_utc(summary.updated_at),
                    display={
                        "chapter_id": chapter.id,
                        "chapter_number": chapter.number,
                        "chapter_title": chapter.title,
                        "summary": summary.summary,
                    },
                )
            )
        return candidates
