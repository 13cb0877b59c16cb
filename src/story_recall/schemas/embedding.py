"""Schemas for embedding refresh, status and entity change events."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from story_recall.schemas.search import CamelModel, EntityKind


class RefreshScheduledResponse(CamelModel):
    scheduled: bool
    kind: EntityKind
    entity_id: str


class KindRefreshCounts(CamelModel):
    """Counts for one entity kind within a document refresh."""

    total: int = 0
    stale: int = 0
    updated: int = 0
    failed: int = 0
    not_processed: int = 0


class DocumentRefreshReport(CamelModel):
    """Aggregate outcome of refreshing every stale entity of a novel.

    A refresh never fails as a whole for partial failure; callers compare
    ``updated`` with ``stale`` to decide whether to retry.
    """

    novel_id: str
    cards: KindRefreshCounts = Field(default_factory=KindRefreshCounts)
    summaries: KindRefreshCounts = Field(default_factory=KindRefreshCounts)
    deadline_exceeded: bool = False

    def counts_for(self, kind: EntityKind) -> KindRefreshCounts:
        return self.cards if kind == EntityKind.CARD else self.summaries


class DocumentRefreshResponse(CamelModel):
    """Flat wire shape of ``DocumentRefreshReport``."""

    novel_id: str
    cards_total: int
    cards_stale: int
    cards_updated: int
    cards_failed: int
    summaries_total: int
    summaries_stale: int
    summaries_updated: int
    summaries_failed: int
    not_processed: int
    deadline_exceeded: bool

    @classmethod
    def from_report(cls, report: DocumentRefreshReport) -> "DocumentRefreshResponse":
        return cls(
            novel_id=report.novel_id,
            cards_total=report.cards.total,
            cards_stale=report.cards.stale,
            cards_updated=report.cards.updated,
            cards_failed=report.cards.failed,
            summaries_total=report.summaries.total,
            summaries_stale=report.summaries.stale,
            summaries_updated=report.summaries.updated,
            summaries_failed=report.summaries.failed,
            not_processed=report.cards.not_processed + report.summaries.not_processed,
            deadline_exceeded=report.deadline_exceeded,
        )


class KindEmbeddingStatus(CamelModel):
    total: int
    with_embedding: int = Field(..., description="Entities whose stored embedding is fresh")
    stale: int = Field(0, description="Entities with an out-of-date stored embedding")
    percentage: int


class EmbeddingStatusResponse(CamelModel):
    cards: KindEmbeddingStatus
    summaries: KindEmbeddingStatus


class RefreshFailure(CamelModel):
    """A recorded failed refresh attempt, for auditing."""

    kind: EntityKind
    entity_id: str
    novel_id: Optional[str] = None
    error_kind: str
    message: str
    attempts: int
    failed_at: datetime


class RefreshFailuresResponse(CamelModel):
    failures: List[RefreshFailure]


class EntityEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class EntityEvent(CamelModel):
    """Change notification from the entity CRUD layer."""

    event: EntityEventType
    kind: EntityKind
    entity_id: str
    novel_id: Optional[str] = Field(
        None, description="Owning novel; needed to drop the record of a deleted entity"
    )
