"""Fixtures for API tests."""

from typing import AsyncGenerator

import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from story_recall.deps import get_app_config, get_session_maker, get_sync_orchestrator


@pytest_asyncio.fixture
async def app(app_config, session_maker, orchestrator) -> AsyncGenerator[FastAPI, None]:
    """Create FastAPI test application."""
    from story_recall.api.app import app

    app.dependency_overrides[get_app_config] = lambda: app_config
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_sync_orchestrator] = lambda: orchestrator
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create client using ASGI transport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
