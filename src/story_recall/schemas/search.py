"""Search schemas for hybrid retrieval over cards and chapter summaries."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from story_recall.models.novel import CardCategory


class EntityKind(str, Enum):
    """The two embeddable entity kinds."""

    CARD = "card"
    SUMMARY = "summary"


class MatchType(str, Enum):
    """Which signals contributed to a result's score."""

    SEMANTIC = "semantic"
    LEXICAL = "lexical"
    HYBRID = "hybrid"


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, serializes as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchResult(CamelModel):
    """One ranked hit. Display fields depend on ``kind``."""

    id: str
    kind: EntityKind
    score: float = Field(..., description="Combined score used for ranking")
    semantic_score: Optional[float] = Field(
        None, description="Cosine similarity, present only with a fresh embedding"
    )
    lexical_score: float = 0.0
    match_type: MatchType
    rank: int
    is_pinned: bool = False
    updated_at: Optional[datetime] = None

    # Card display fields
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None

    # Summary display fields
    chapter_id: Optional[str] = None
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    summary: Optional[str] = None


class CardSearchRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=2000)
    top_k: Optional[int] = Field(None, gt=0, le=100)
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    categories: Optional[List[CardCategory]] = None


class SummarySearchRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=2000)
    top_k: Optional[int] = Field(None, gt=0, le=100)
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    before_chapter_seq: Optional[int] = Field(
        None, description="Exclude summaries of chapters numbered at or after this"
    )
    before_chapter_id: Optional[str] = Field(
        None, description="Resolve the cutoff from this chapter's number"
    )


class SearchPreviewRequest(CamelModel):
    """Combined card + summary preview used while writing a chapter."""

    query: str = Field(..., max_length=2000)
    top_k: int = Field(5, gt=0, le=50)
    current_chapter_id: Optional[str] = None


class SearchPreviewResponse(CamelModel):
    cards: List[SearchResult]
    summaries: List[SearchResult]
