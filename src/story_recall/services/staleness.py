"""Decide whether a stored embedding still matches its entity's text.

These checks never call the embedding provider; they only decide whether a
call is warranted, so bulk refreshes can skip fresh entities cheaply.
"""

from typing import TYPE_CHECKING, Any, Optional

from story_recall.services.text_normalizer import content_digest, normalize

if TYPE_CHECKING:  # pragma: no cover
    from story_recall.repository.embedding_record import EmbeddingRecord


def is_fresh_digest(
    digest: str,
    record: Optional["EmbeddingRecord"],
    *,
    model_name: Optional[str] = None,
) -> bool:
    """True when ``record`` exists and was produced from text with ``digest``.

    When ``model_name`` is given, a record produced by a different model is
    treated as stale too.
    """
    if record is None:
        return False
    if record.content_digest != digest:
        return False
    if model_name is not None and record.model_name and record.model_name != model_name:
        return False
    return True


def is_stale(
    entity: Any,
    record: Optional["EmbeddingRecord"],
    *,
    model_name: Optional[str] = None,
) -> bool:
    """True if ``record`` is missing or does not match ``normalize(entity)``."""
    return not is_fresh_digest(content_digest(normalize(entity)), record, model_name=model_name)
