"""FastAPI application for story-recall retrieval and embedding sync."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from loguru import logger

from story_recall import __version__ as version
from story_recall import db
from story_recall.api.routers import embeddings
from story_recall.config import ConfigManager, init_logging
from story_recall.repository.embedding_provider_factory import create_embedding_provider
from story_recall.repository.semantic_errors import (
    EntityNotFoundError,
    SemanticDependenciesMissingError,
    StoreUnavailableError,
    StoryRecallError,
)
from story_recall.sync.sync_orchestrator import SyncOrchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    """Lifecycle manager for the FastAPI app."""

    app_config = ConfigManager().config
    init_logging(app_config)
    logger.info("Starting story-recall API")

    engine, session_maker = await db.get_or_create_db(app_config.database_path)
    app.state.engine = engine
    app.state.session_maker = session_maker

    provider = create_embedding_provider(app_config)
    app.state.orchestrator = SyncOrchestrator(
        session_maker,
        provider,
        max_workers=app_config.sync_max_workers,
        provider_timeout=app_config.embedding_timeout,
        retry_delays=app_config.sync_retry_delays,
        document_deadline=app_config.sync_document_deadline,
    )
    logger.info(
        f"Embedding provider: {app_config.embedding_provider} "
        f"({provider.model_name}, {provider.dimensions} dims)"
    )

    yield

    logger.info("Shutting down story-recall API")
    await app.state.orchestrator.shutdown()
    await db.shutdown_db()


app = FastAPI(
    title="story-recall API",
    description="Hybrid semantic retrieval over novel cards and chapter summaries",
    version=version,
    lifespan=lifespan,
)

app.include_router(embeddings.router)


def _error_response(status_code: int, exc: StoryRecallError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})


@app.exception_handler(EntityNotFoundError)
async def not_found_handler(request: Request, exc: EntityNotFoundError):
    return _error_response(404, exc)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
    return _error_response(503, exc)


@app.exception_handler(SemanticDependenciesMissingError)
async def dependencies_missing_handler(request: Request, exc: SemanticDependenciesMissingError):
    logger.error(f"Embedding dependencies missing: {exc}")
    return _error_response(503, exc)


@app.exception_handler(Exception)
async def exception_handler(request, exc):  # pragma: no cover
    logger.exception(
        "API unhandled exception",
        url=str(request.url),
        method=request.method,
        client=request.client.host if request.client else None,
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return await http_exception_handler(request, HTTPException(status_code=500, detail=str(exc)))
