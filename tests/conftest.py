"""Common test fixtures."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from story_recall import db
from story_recall.config import ConfigManager, StoryRecallConfig
from story_recall.models import Card, Chapter, ChapterSummary, Novel
from story_recall.repository.embedding_provider import check_dimensions, prepare_input
from story_recall.services.hybrid_ranker import HybridRanker
from story_recall.services.retrieval_service import RetrievalService
from story_recall.sync.sync_orchestrator import SyncOrchestrator

# Each concept is one vector axis; a text scores 1.0 on an axis when it
# mentions any of the axis keywords.
CONCEPTS = (
    ("knight", "骑士", "paladin"),
    ("sword", "blade", "剑"),
    ("castle", "fortress"),
    ("dragon",),
    ("magic", "spell"),
    ("sea", "storm", "port"),
)


class StubEmbeddingProvider:
    """Deterministic keyword-axis embeddings with call counting and failure injection."""

    model_name = "stub-embedding"
    dimensions = len(CONCEPTS) + 1
    max_input_chars = 8000

    def __init__(self):
        self.calls: list[str] = []
        self.query_calls: list[str] = []
        self.failures: list[Exception] = []
        self.always_fail: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.delay: float = 0.0
        self.query_delay: float = 0.0
        self.wrong_dimensions = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def vector_for(self, text: str) -> list[float]:
        lowered = text.lower()
        vector = [
            1.0 if any(keyword in lowered for keyword in keywords) else 0.0
            for keywords in CONCEPTS
        ]
        # Unrelated text points along its own axis
        vector.append(0.0 if any(vector) else 1.0)
        if self.wrong_dimensions:
            vector.append(0.0)
        return vector

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        vector = self.vector_for(prepare_input(text, self.max_input_chars))
        check_dimensions([vector], self.dimensions, self.model_name)
        return vector

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.query_error is not None:
            raise self.query_error
        return self.vector_for(prepare_input(text, self.max_input_chars))

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


@dataclass
class SeededNovels:
    """Ids of the seeded test data."""

    novel_id: str
    other_novel_id: str
    empty_novel_id: str
    cards: dict[str, str] = field(default_factory=dict)
    chapters: dict[int, str] = field(default_factory=dict)
    summaries: dict[int, str] = field(default_factory=dict)
    other_card_id: str = ""


async def seed_novels(session_maker: async_sessionmaker[AsyncSession]) -> SeededNovels:
    """Insert two populated novels and an empty one."""
    base_time = datetime(2024, 5, 1, tzinfo=timezone.utc)
    async with db.scoped_session(session_maker) as session:
        novel = Novel(title="The Northern Oath")
        other = Novel(title="A Different Story")
        empty = Novel(title="Blank Pages")
        session.add_all([novel, other, empty])
        await session.flush()

        cards = {
            "aldric": Card(
                novel_id=novel.id,
                name="Sir Aldric",
                category="character",
                description="A loyal knight of the northern castle",
                tags="hero, oath",
                sort_order=1,
                updated_at=base_time,
            ),
            "dawnbreaker": Card(
                novel_id=novel.id,
                name="Dawnbreaker",
                category="item",
                description="An ancient sword forged in dragon fire",
                tags='["relic", "weapon"]',
                sort_order=2,
                updated_at=base_time,
            ),
            "saltmere": Card(
                novel_id=novel.id,
                name="Saltmere",
                category="location",
                description="A port town by the sea",
                sort_order=3,
                updated_at=base_time + timedelta(days=1),
            ),
            "vey": Card(
                novel_id=novel.id,
                name="Archmage Vey",
                category="character",
                description="Master of forbidden magic",
                sort_order=4,
                updated_at=base_time + timedelta(days=2),
            ),
        }
        session.add_all(cards.values())

        other_card = Card(
            novel_id=other.id,
            name="Other Knight",
            category="character",
            description="A knight with a sword from another story",
        )
        session.add(other_card)

        summary_texts = {
            1: ("The Oath", "Aldric swears his oath as a knight at the castle."),
            2: ("The Lair", "The sword Dawnbreaker is found in the dragon's lair."),
            3: ("Landfall", "A storm drives the party to Saltmere."),
            4: ("The Curse", "Vey reveals the magic behind the knight's curse."),
        }
        chapters = {}
        summaries = {}
        for number, (title, text_value) in summary_texts.items():
            chapter = Chapter(novel_id=novel.id, number=number, title=title)
            session.add(chapter)
            await session.flush()
            chapters[number] = chapter
            summary = ChapterSummary(
                novel_id=novel.id,
                chapter_id=chapter.id,
                summary=text_value,
                key_points=[title],
                updated_at=base_time + timedelta(days=number),
            )
            session.add(summary)
            summaries[number] = summary
        await session.flush()

        return SeededNovels(
            novel_id=novel.id,
            other_novel_id=other.id,
            empty_novel_id=empty.id,
            cards={key: card.id for key, card in cards.items()},
            chapters={number: chapter.id for number, chapter in chapters.items()},
            summaries={number: summary.id for number, summary in summaries.items()},
            other_card_id=other_card.id,
        )


@pytest.fixture
def database_path(tmp_path) -> Path:
    return tmp_path / "story-recall.db"


@pytest.fixture
def app_config(database_path) -> StoryRecallConfig:
    config = StoryRecallConfig(
        env="test",
        database_path=database_path,
        sync_retry_delays=(0.0, 0.0),
        embedding_timeout=1.0,
    )
    ConfigManager.set_config(config)
    yield config
    ConfigManager.invalidate()


@pytest_asyncio.fixture
async def engine_factory(
    database_path,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]], None]:
    """Create a file-backed database with tables for each test."""
    async with db.engine_session_factory(database_path) as (engine, session_maker):
        yield engine, session_maker


@pytest.fixture
def session_maker(engine_factory) -> async_sessionmaker[AsyncSession]:
    _, session_maker = engine_factory
    return session_maker


@pytest_asyncio.fixture
async def seeded(session_maker) -> SeededNovels:
    return await seed_novels(session_maker)


@pytest.fixture
def novel_seeder():
    """The seeding coroutine, for tests that manage their own event loop."""
    return seed_novels


@pytest.fixture
def provider() -> StubEmbeddingProvider:
    return StubEmbeddingProvider()


@pytest_asyncio.fixture
async def orchestrator(session_maker, provider) -> AsyncGenerator[SyncOrchestrator, None]:
    orchestrator = SyncOrchestrator(
        session_maker,
        provider,
        max_workers=4,
        provider_timeout=1.0,
        retry_delays=(0.0, 0.0),
        document_deadline=30.0,
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def ranker(provider) -> HybridRanker:
    return HybridRanker(provider, query_timeout=1.0)


@pytest.fixture
def retrieval_service(session_maker, orchestrator, ranker) -> RetrievalService:
    return RetrievalService(session_maker, orchestrator, ranker)
