"""Dependency injection functions for story-recall services."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from story_recall.config import ConfigManager, StoryRecallConfig
from story_recall.services.retrieval_service import RetrievalService
from story_recall.sync.sync_orchestrator import SyncOrchestrator


## config


def get_app_config() -> StoryRecallConfig:  # pragma: no cover
    return ConfigManager().config


AppConfigDep = Annotated[StoryRecallConfig, Depends(get_app_config)]


## sqlalchemy


async def get_session_maker(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session maker cached on app state by the lifespan handler."""
    return request.app.state.session_maker


SessionMakerDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)]


## sync


async def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


SyncOrchestratorDep = Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)]


## services


async def get_retrieval_service(
    session_maker: SessionMakerDep,
    orchestrator: SyncOrchestratorDep,
    app_config: AppConfigDep,
) -> RetrievalService:
    return RetrievalService.from_config(session_maker, orchestrator, app_config)


RetrievalServiceDep = Annotated[RetrievalService, Depends(get_retrieval_service)]
