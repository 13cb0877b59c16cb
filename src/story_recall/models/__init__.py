"""Models package for story-recall."""

from story_recall.models.base import Base
from story_recall.models.embedding import CardEmbedding, ChapterSummaryEmbedding
from story_recall.models.novel import Card, CardCategory, Chapter, ChapterSummary, Novel

__all__ = [
    "Base",
    "Card",
    "CardCategory",
    "CardEmbedding",
    "Chapter",
    "ChapterSummary",
    "ChapterSummaryEmbedding",
    "Novel",
]
