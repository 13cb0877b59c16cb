"""Plain data carried between the vector store, staleness checks and ranking."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from story_recall.schemas.search import EntityKind


@dataclass(frozen=True)
class EmbeddingRecord:
    """Stored embedding for one entity.

    The record is fresh only while ``content_digest`` equals the digest of the
    entity's current normalized text.
    """

    entity_id: str
    kind: EntityKind
    novel_id: str
    vector: list[float]
    content_digest: str
    generated_at: datetime
    model_name: str = ""

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass
class Candidate:
    """An entity eligible for ranking, with its stored embedding if any.

    ``normalized_text`` and ``content_digest`` describe the entity as it is now;
    ``record`` is whatever the store holds and may be stale.
    """

    entity_id: str
    kind: EntityKind
    novel_id: str
    normalized_text: str
    content_digest: str
    record: Optional[EmbeddingRecord] = None
    is_pinned: bool = False
    updated_at: Optional[datetime] = None
    display: dict = field(default_factory=dict)
