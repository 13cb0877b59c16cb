"""Novel-side entities that own embeddable content.

These tables belong to the CRUD layer of the writing application. The
retrieval engine only reads them; they are mapped here so the engine can
build normalized text and join embedding rows against their owners.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from story_recall.models.base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CardCategory(str, Enum):
    """Fixed set of card categories."""

    CHARACTER = "character"
    TERM = "term"
    ITEM = "item"
    SKILL = "skill"
    LOCATION = "location"
    FACTION = "faction"
    EVENT = "event"


class Novel(Base):
    """The parent document. Every retrieval query is scoped to one novel."""

    __tablename__ = "novels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    chapters: Mapped[List["Chapter"]] = relationship(
        back_populates="novel", cascade="all, delete-orphan", passive_deletes=True
    )
    cards: Mapped[List["Card"]] = relationship(
        back_populates="novel", cascade="all, delete-orphan", passive_deletes=True
    )


class Chapter(Base):
    """A chapter; ``number`` defines narrative order."""

    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("novel_id", "number", name="uix_chapter_novel_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    novel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("novels.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(200), default="")

    novel: Mapped[Novel] = relationship(back_populates="chapters")
    summary: Mapped[Optional["ChapterSummary"]] = relationship(
        back_populates="chapter", cascade="all, delete-orphan", passive_deletes=True
    )


class Card(Base):
    """A setting card: character, item, location and so on."""

    __tablename__ = "cards"
    __table_args__ = (Index("ix_cards_novel_category", "novel_id", "category"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    novel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("novels.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(50))
    category: Mapped[str] = mapped_column(String(20), default=CardCategory.CHARACTER.value)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Free-form tag string as entered by the author ("a, b" or a JSON array)
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggers: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    novel: Mapped[Novel] = relationship(back_populates="cards")


class ChapterSummary(Base):
    """Summary of one chapter. Key points are displayed but never embedded."""

    __tablename__ = "chapter_summaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    novel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("novels.id", ondelete="CASCADE"), index=True
    )
    chapter_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chapters.id", ondelete="CASCADE"), unique=True
    )
    summary: Mapped[str] = mapped_column(Text)
    key_points: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    chapter: Mapped[Chapter] = relationship(back_populates="summary")
