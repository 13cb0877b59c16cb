"""Router for embedding refresh, status and semantic search of one novel."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from story_recall.deps import RetrievalServiceDep
from story_recall.schemas.embedding import (
    DocumentRefreshResponse,
    EmbeddingStatusResponse,
    EntityEvent,
    RefreshFailuresResponse,
    RefreshScheduledResponse,
)
from story_recall.schemas.search import (
    CardSearchRequest,
    EntityKind,
    SearchPreviewRequest,
    SearchPreviewResponse,
    SearchResult,
    SummarySearchRequest,
)

MIN_PREVIEW_QUERY_CHARS = 5

router = APIRouter(prefix="/novels/{novel_id}/embeddings", tags=["embeddings"])


@router.post(
    "/refresh/{kind}/{entity_id}",
    response_model=RefreshScheduledResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def refresh_entity(
    novel_id: str,
    kind: EntityKind,
    entity_id: str,
    retrieval_service: RetrievalServiceDep,
) -> RefreshScheduledResponse:
    """Schedule a background refresh of one card or chapter summary."""
    scheduled = await retrieval_service.refresh_entity(kind, entity_id, novel_id=novel_id)
    return RefreshScheduledResponse(scheduled=scheduled, kind=kind, entity_id=entity_id)


@router.post("", response_model=DocumentRefreshResponse)
async def refresh_document(
    novel_id: str,
    retrieval_service: RetrievalServiceDep,
    deadline: Optional[float] = Query(None, gt=0, description="Seconds before work is cut off"),
) -> DocumentRefreshResponse:
    """Refresh every stale embedding of a novel and report the counts."""
    report = await retrieval_service.refresh_document(novel_id, deadline=deadline)
    return DocumentRefreshResponse.from_report(report)


@router.get("", response_model=EmbeddingStatusResponse)
async def embedding_status(
    novel_id: str, retrieval_service: RetrievalServiceDep
) -> EmbeddingStatusResponse:
    return await retrieval_service.embedding_status(novel_id)


@router.post("/reindex", response_model=DocumentRefreshResponse)
async def reindex_document(
    novel_id: str,
    retrieval_service: RetrievalServiceDep,
    deadline: Optional[float] = Query(None, gt=0),
) -> DocumentRefreshResponse:
    """Drop all stored embeddings of a novel and regenerate them."""
    report = await retrieval_service.reindex_document(novel_id, deadline=deadline)
    return DocumentRefreshResponse.from_report(report)


@router.get("/failures", response_model=RefreshFailuresResponse)
async def recent_failures(
    novel_id: str, retrieval_service: RetrievalServiceDep
) -> RefreshFailuresResponse:
    return RefreshFailuresResponse(failures=retrieval_service.recent_failures(novel_id))


@router.post("/search/cards", response_model=List[SearchResult])
async def search_cards(
    novel_id: str, request: CardSearchRequest, retrieval_service: RetrievalServiceDep
) -> List[SearchResult]:
    return await retrieval_service.search_cards(
        novel_id,
        request.query,
        top_k=request.top_k,
        threshold=request.threshold,
        categories=request.categories,
    )


@router.post("/search/summaries", response_model=List[SearchResult])
async def search_summaries(
    novel_id: str, request: SummarySearchRequest, retrieval_service: RetrievalServiceDep
) -> List[SearchResult]:
    return await retrieval_service.search_summaries(
        novel_id,
        request.query,
        top_k=request.top_k,
        threshold=request.threshold,
        before_chapter_number=request.before_chapter_seq,
        before_chapter_id=request.before_chapter_id,
    )


@router.post("/search", response_model=SearchPreviewResponse)
async def search_preview(
    novel_id: str, request: SearchPreviewRequest, retrieval_service: RetrievalServiceDep
) -> SearchPreviewResponse:
    """Cards and earlier chapter summaries related to the text being written."""
    if len(request.query.strip()) < MIN_PREVIEW_QUERY_CHARS:
        raise HTTPException(
            status_code=400,
            detail=f"Query must be at least {MIN_PREVIEW_QUERY_CHARS} characters",
        )
    return await retrieval_service.search(
        novel_id,
        request.query,
        top_k=request.top_k,
        current_chapter_id=request.current_chapter_id,
    )


@router.post(
    "/events", response_model=RefreshScheduledResponse, status_code=status.HTTP_202_ACCEPTED
)
async def entity_event(
    novel_id: str, event: EntityEvent, retrieval_service: RetrievalServiceDep
) -> RefreshScheduledResponse:
    """Accept a create, update or delete notification from the CRUD layer."""
    event = event.model_copy(update={"novel_id": novel_id})
    scheduled = await retrieval_service.handle_entity_event(event)
    return RefreshScheduledResponse(scheduled=scheduled, kind=event.kind, entity_id=event.entity_id)
