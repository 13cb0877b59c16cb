"""Embedding record tables, one per entity kind.

Rows are a disposable cache derived from entity text. They reference their
entity only to cascade on delete and can always be regenerated.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from story_recall.models.base import Base


class CardEmbedding(Base):
    __tablename__ = "card_embeddings"

    entity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True
    )
    novel_id: Mapped[str] = mapped_column(String(36), index=True)
    vector: Mapped[list] = mapped_column(JSON)
    dimensions: Mapped[int] = mapped_column(Integer)
    model_name: Mapped[str] = mapped_column(String(100))
    content_digest: Mapped[str] = mapped_column(String(64))
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ChapterSummaryEmbedding(Base):
    __tablename__ = "chapter_summary_embeddings"

    entity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chapter_summaries.id", ondelete="CASCADE"), primary_key=True
    )
    novel_id: Mapped[str] = mapped_column(String(36), index=True)
    vector: Mapped[list] = mapped_column(JSON)
    dimensions: Mapped[int] = mapped_column(Integer)
    model_name: Mapped[str] = mapped_column(String(100))
    content_digest: Mapped[str] = mapped_column(String(64))
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
