"""Tests for SyncOrchestrator refresh behaviour."""

import asyncio

import pytest
from sqlalchemy import update

from story_recall import db
from story_recall.models import Card
from story_recall.repository.semantic_errors import (
    EntityNotFoundError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StoreUnavailableError,
)
from story_recall.repository.vector_store import VectorStore
from story_recall.schemas.search import EntityKind
from story_recall.sync.sync_orchestrator import RefreshState, SyncOrchestrator


async def _edit_card(session_maker, card_id: str, **values) -> None:
    async with db.scoped_session(session_maker) as session:
        await session.execute(update(Card).where(Card.id == card_id).values(**values))


@pytest.mark.asyncio
async def test_refresh_entity_writes_fresh_record(orchestrator, provider, session_maker, seeded):
    card_id = seeded.cards["aldric"]

    attempt = await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    assert attempt.state == RefreshState.DONE
    assert attempt.attempts == 1
    assert attempt.novel_id == seeded.novel_id
    assert attempt.finished_at is not None

    store = VectorStore(session_maker, seeded.novel_id)
    record = await store.get(EntityKind.CARD, card_id)
    candidate = next(c for c in await store.scan(EntityKind.CARD) if c.entity_id == card_id)
    assert record.content_digest == candidate.content_digest
    assert record.model_name == "stub-embedding"
    assert record.vector == provider.vector_for(candidate.normalized_text)


@pytest.mark.asyncio
async def test_refresh_of_fresh_entity_makes_no_provider_call(orchestrator, provider, seeded):
    card_id = seeded.cards["dawnbreaker"]
    await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    attempt = await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    assert attempt.state == RefreshState.SKIPPED
    assert attempt.attempts == 0
    assert provider.call_count == 1


@pytest.mark.asyncio
async def test_edit_triggers_new_embedding(orchestrator, provider, session_maker, seeded):
    card_id = seeded.cards["dawnbreaker"]
    await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    # Cosmetic edits keep the record fresh
    await _edit_card(session_maker, card_id, category="event", is_pinned=True, tags="weapon,relic")
    assert (await orchestrator.refresh_entity(EntityKind.CARD, card_id)).state == RefreshState.SKIPPED

    await _edit_card(session_maker, card_id, description="A blade of the castle guard")
    attempt = await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    assert attempt.state == RefreshState.DONE
    assert provider.call_count == 2
    assert "castle guard" in provider.calls[-1]


@pytest.mark.asyncio
async def test_rejected_input_is_attempted_once(orchestrator, provider, seeded):
    provider.always_fail = ProviderRejectedError("content policy")
    summary_id = seeded.summaries[2]

    attempt = await orchestrator.refresh_entity(EntityKind.SUMMARY, summary_id)

    assert attempt.state == RefreshState.FAILED
    assert attempt.error_kind == "provider_rejected"
    assert attempt.attempts == 1
    assert provider.call_count == 1

    failures = orchestrator.recent_failures(seeded.novel_id)
    assert [(f.entity_id, f.error_kind) for f in failures] == [(summary_id, "provider_rejected")]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_twice(orchestrator, provider, seeded):
    provider.always_fail = ProviderUnavailableError("503")

    attempt = await orchestrator.refresh_entity(EntityKind.CARD, seeded.cards["vey"])

    assert attempt.state == RefreshState.FAILED
    assert attempt.error_kind == "provider_unavailable"
    assert attempt.attempts == 3
    assert provider.call_count == 3


@pytest.mark.asyncio
async def test_transient_failure_then_success_clears_ledger(orchestrator, provider, seeded):
    card_id = seeded.cards["vey"]
    provider.always_fail = ProviderUnavailableError("503")
    await orchestrator.refresh_entity(EntityKind.CARD, card_id)
    assert len(orchestrator.recent_failures()) == 1

    provider.always_fail = None
    provider.failures = [ProviderUnavailableError("rate limited")]
    attempt = await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    assert attempt.state == RefreshState.DONE
    assert attempt.attempts == 2
    assert orchestrator.recent_failures() == []


@pytest.mark.asyncio
async def test_provider_timeout_is_retried_then_fails(session_maker, provider, seeded):
    provider.delay = 0.2
    orchestrator = SyncOrchestrator(
        session_maker, provider, provider_timeout=0.01, retry_delays=(0.0, 0.0)
    )
    try:
        attempt = await orchestrator.refresh_entity(EntityKind.CARD, seeded.cards["aldric"])
    finally:
        await orchestrator.shutdown()

    assert attempt.state == RefreshState.FAILED
    assert attempt.error_kind == "provider_unavailable"
    assert attempt.attempts == 3


@pytest.mark.asyncio
async def test_schema_mismatch_is_not_retried(
    orchestrator, retrieval_service, provider, session_maker, seeded
):
    provider.wrong_dimensions = True
    card_id = seeded.cards["aldric"]

    attempt = await orchestrator.refresh_entity(EntityKind.CARD, card_id)

    assert attempt.state == RefreshState.FAILED
    assert attempt.error_kind == "schema_mismatch"
    assert attempt.attempts == 1
    assert await VectorStore(session_maker, seeded.novel_id).get(EntityKind.CARD, card_id) is None

    status = await retrieval_service.embedding_status(seeded.novel_id)
    assert status.cards.total == 4
    assert status.cards.with_embedding == 0
    assert status.cards.percentage == 0


@pytest.mark.asyncio
async def test_store_failure_is_retried(orchestrator, provider, seeded, monkeypatch):
    calls = {"count": 0}
    original_upsert = VectorStore.upsert

    async def flaky_upsert(self, record):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StoreUnavailableError("database is locked")
        await original_upsert(self, record)

    monkeypatch.setattr(VectorStore, "upsert", flaky_upsert)

    attempt = await orchestrator.refresh_entity(EntityKind.CARD, seeded.cards["saltmere"])

    assert attempt.state == RefreshState.DONE
    assert calls["count"] == 2
    # Only the write was retried
    assert provider.call_count == 1


@pytest.mark.asyncio
async def test_missing_entity_is_skipped(orchestrator, provider):
    attempt = await orchestrator.refresh_entity(EntityKind.CARD, "no-such-card")

    assert attempt.state == RefreshState.SKIPPED
    assert attempt.error_kind == "not_found"
    assert provider.call_count == 0


@pytest.mark.asyncio
async def test_concurrent_refreshes_of_one_entity_call_provider_once(
    orchestrator, provider, seeded
):
    provider.delay = 0.05
    card_id = seeded.cards["aldric"]

    first, second = await asyncio.gather(
        orchestrator.refresh_entity(EntityKind.CARD, card_id),
        orchestrator.refresh_entity(EntityKind.CARD, card_id),
    )

    assert sorted([first.state, second.state], key=lambda s: s.value) == [
        RefreshState.DONE,
        RefreshState.SKIPPED,
    ]
    assert provider.call_count == 1


@pytest.mark.asyncio
async def test_schedule_refresh_runs_in_background(orchestrator, provider, session_maker, seeded):
    card_id = seeded.cards["saltmere"]

    assert orchestrator.schedule_refresh(EntityKind.CARD, card_id) is True
    # Queued duplicates collapse into the pending refresh
    assert orchestrator.schedule_refresh(EntityKind.CARD, card_id) is True

    await orchestrator.drain()

    assert provider.call_count == 1
    store = VectorStore(session_maker, seeded.novel_id)
    assert await store.get(EntityKind.CARD, card_id) is not None


@pytest.mark.asyncio
async def test_scheduled_failures_are_recorded_not_raised(orchestrator, provider, seeded):
    provider.always_fail = ProviderRejectedError("bad input")

    orchestrator.schedule_refresh(EntityKind.SUMMARY, seeded.summaries[1])
    await orchestrator.drain()

    assert [f.error_kind for f in orchestrator.recent_failures()] == ["provider_rejected"]


@pytest.mark.asyncio
async def test_shutdown_rejects_new_work(orchestrator, seeded):
    await orchestrator.shutdown()
    assert orchestrator.schedule_refresh(EntityKind.CARD, seeded.cards["aldric"]) is False


@pytest.mark.asyncio
async def test_refresh_document_counts(orchestrator, provider, seeded):
    report = await orchestrator.refresh_document(seeded.novel_id)

    assert (report.cards.total, report.cards.stale, report.cards.updated) == (4, 4, 4)
    assert (report.summaries.total, report.summaries.stale, report.summaries.updated) == (4, 4, 4)
    assert report.cards.failed == report.summaries.failed == 0
    assert report.deadline_exceeded is False
    assert provider.call_count == 8

    again = await orchestrator.refresh_document(seeded.novel_id)
    assert again.cards.stale == again.summaries.stale == 0
    assert again.cards.updated == again.summaries.updated == 0
    assert provider.call_count == 8


@pytest.mark.asyncio
async def test_refresh_document_reports_partial_failure(orchestrator, provider, seeded):
    provider.failures = [ProviderRejectedError("policy")]

    report = await orchestrator.refresh_document(seeded.novel_id)

    assert report.cards.failed + report.summaries.failed == 1
    assert report.cards.updated + report.summaries.updated == 7


@pytest.mark.asyncio
async def test_refresh_document_deadline_marks_unprocessed(orchestrator, provider, seeded):
    provider.delay = 0.5

    report = await orchestrator.refresh_document(seeded.novel_id, deadline=0.05)

    assert report.deadline_exceeded is True
    assert report.cards.not_processed == 4
    assert report.summaries.not_processed == 4
    assert report.cards.updated == report.summaries.updated == 0


@pytest.mark.asyncio
async def test_refresh_document_empty_and_unknown_novels(orchestrator, provider, seeded):
    report = await orchestrator.refresh_document(seeded.empty_novel_id)
    assert report.cards.total == report.summaries.total == 0

    with pytest.raises(EntityNotFoundError):
        await orchestrator.refresh_document("missing-novel")
    assert provider.call_count == 0


@pytest.mark.asyncio
async def test_failure_ledger_is_bounded(session_maker, provider, seeded):
    provider.always_fail = ProviderRejectedError("policy")
    orchestrator = SyncOrchestrator(
        session_maker, provider, retry_delays=(), max_tracked_failures=2
    )
    try:
        for key in ("aldric", "dawnbreaker", "saltmere"):
            await orchestrator.refresh_entity(EntityKind.CARD, seeded.cards[key])
    finally:
        await orchestrator.shutdown()

    assert [f.entity_id for f in orchestrator.recent_failures()] == [
        seeded.cards["saltmere"],
        seeded.cards["dawnbreaker"],
    ]


@pytest.mark.asyncio
async def test_provider_calls_never_exceed_pool_size(session_maker, provider, seeded, monkeypatch):
    in_flight = 0
    peak = 0
    embed = provider.embed

    async def counting_embed(text_value):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        try:
            await asyncio.sleep(0.02)
            return await embed(text_value)
        finally:
            in_flight -= 1

    monkeypatch.setattr(provider, "embed", counting_embed)
    orchestrator = SyncOrchestrator(session_maker, provider, max_workers=2, retry_delays=())
    try:
        report = await orchestrator.refresh_document(seeded.novel_id)
    finally:
        await orchestrator.shutdown()

    assert report.cards.updated + report.summaries.updated == 8
    assert 1 <= peak <= 2
