"""Tests for engine setup and session handling."""

import pytest
from sqlalchemy import select, text

from story_recall import db
from story_recall.models import Novel


@pytest.mark.asyncio
async def test_wal_mode_and_busy_timeout(tmp_path):
    async with db.engine_session_factory(tmp_path / "test.db") as (engine, _):
        async with engine.connect() as conn:
            journal_mode = (await conn.execute(text("PRAGMA journal_mode"))).fetchone()[0]
            busy_timeout = (await conn.execute(text("PRAGMA busy_timeout"))).fetchone()[0]

    assert journal_mode.upper() == "WAL"
    assert busy_timeout == 10000


@pytest.mark.asyncio
async def test_get_or_create_db_reuses_engine(tmp_path):
    db_path = tmp_path / "nested" / "story.db"
    try:
        first_engine, first_maker = await db.get_or_create_db(db_path)
        second_engine, second_maker = await db.get_or_create_db(db_path)

        assert first_engine is second_engine
        assert first_maker is second_maker
        assert db_path.parent.exists()
    finally:
        await db.shutdown_db()

    third_engine, _ = await db.get_or_create_db(db_path)
    try:
        assert third_engine is not first_engine
    finally:
        await db.shutdown_db()


@pytest.mark.asyncio
async def test_scoped_session_rolls_back_on_error(session_maker):
    with pytest.raises(RuntimeError):
        async with db.scoped_session(session_maker) as session:
            session.add(Novel(title="Abandoned Draft"))
            await session.flush()
            raise RuntimeError("boom")

    async with db.scoped_session(session_maker) as session:
        titles = (await session.execute(select(Novel.title))).scalars().all()
    assert "Abandoned Draft" not in titles


@pytest.mark.asyncio
async def test_scoped_session_enables_foreign_keys(session_maker):
    async with db.scoped_session(session_maker) as session:
        enabled = (await session.execute(text("PRAGMA foreign_keys"))).scalar()
    assert enabled == 1


def test_db_url_points_at_file(tmp_path):
    db_path = tmp_path / "story.db"
    assert db.get_db_url(db_path) == f"sqlite+aiosqlite:///{db_path}"
