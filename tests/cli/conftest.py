import asyncio

import pytest

from story_recall import db


@pytest.fixture
def cli_seeded(app_config, provider, novel_seeder, monkeypatch):
    """Seed the configured database and route the CLI to the stub provider."""

    async def _seed():
        async with db.engine_session_factory(app_config.database_path) as (_, session_maker):
            return await novel_seeder(session_maker)

    seeded = asyncio.run(_seed())
    monkeypatch.setattr(
        "story_recall.cli.commands.embeddings.create_embedding_provider",
        lambda config: provider,
    )
    return seeded
