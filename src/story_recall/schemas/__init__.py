"""Pydantic schemas for the retrieval API."""

from story_recall.schemas.embedding import (
    DocumentRefreshReport,
    DocumentRefreshResponse,
    EmbeddingStatusResponse,
    EntityEvent,
    EntityEventType,
    KindEmbeddingStatus,
    KindRefreshCounts,
    RefreshFailure,
    RefreshScheduledResponse,
)
from story_recall.schemas.search import (
    CardSearchRequest,
    EntityKind,
    MatchType,
    SearchPreviewRequest,
    SearchPreviewResponse,
    SearchResult,
    SummarySearchRequest,
)

__all__ = [
    "CardSearchRequest",
    "DocumentRefreshReport",
    "DocumentRefreshResponse",
    "EmbeddingStatusResponse",
    "EntityEvent",
    "EntityEventType",
    "EntityKind",
    "KindEmbeddingStatus",
    "KindRefreshCounts",
    "MatchType",
    "RefreshFailure",
    "RefreshScheduledResponse",
    "SearchPreviewRequest",
    "SearchPreviewResponse",
    "SearchResult",
    "SummarySearchRequest",
]
