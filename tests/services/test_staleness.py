"""Tests for staleness decisions."""

from datetime import datetime, timezone
from types import SimpleNamespace

from story_recall.repository.embedding_record import EmbeddingRecord
from story_recall.schemas.search import EntityKind
from story_recall.services.staleness import is_fresh_digest, is_stale
from story_recall.services.text_normalizer import content_digest, normalize


def _card(**overrides):
    values = dict(name="Dawnbreaker", description="An ancient sword", tags="relic, weapon")
    values.update(overrides)
    return SimpleNamespace(**values)


def _record_for(entity, model_name="stub-embedding"):
    return EmbeddingRecord(
        entity_id="card-1",
        kind=EntityKind.CARD,
        novel_id="novel-1",
        vector=[1.0, 0.0],
        content_digest=content_digest(normalize(entity)),
        generated_at=datetime.now(timezone.utc),
        model_name=model_name,
    )


def test_missing_record_is_stale():
    assert is_stale(_card(), None) is True
    assert is_fresh_digest("abc", None) is False


def test_matching_record_is_fresh():
    card = _card()
    assert is_stale(card, _record_for(card)) is False


def test_text_edit_makes_record_stale():
    record = _record_for(_card())
    assert is_stale(_card(description="A cursed sword"), record) is True
    assert is_stale(_card(name="Duskbreaker"), record) is True


def test_cosmetic_edits_keep_record_fresh():
    record = _record_for(_card())
    assert is_stale(_card(tags="weapon,relic"), record) is False
    assert is_stale(_card(description="  An ancient\n sword "), record) is False
    assert is_stale(_card(category="faction", is_pinned=True), record) is False


def test_model_change_makes_record_stale():
    card = _card()
    record = _record_for(card, model_name="text-embedding-3-small")
    assert is_stale(card, record) is False
    assert is_stale(card, record, model_name="text-embedding-3-small") is False
    assert is_stale(card, record, model_name="text-embedding-3-large") is True
