import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_scoped_session,
    async_sessionmaker,
    create_async_engine,
)

from story_recall.models import Base

# Module level state - one engine per database path
_engines: dict[str, AsyncEngine] = {}
_session_makers: dict[str, async_sessionmaker[AsyncSession]] = {}
_tables_created: dict[str, bool] = {}


def get_db_url(db_path: Path) -> str:
    """Get SQLAlchemy URL for database path."""
    return f"sqlite+aiosqlite:///{db_path}"


def get_scoped_session_factory(
    session_maker: async_sessionmaker[AsyncSession],
) -> async_scoped_session:
    """Create a scoped session factory scoped to current task."""
    return async_scoped_session(session_maker, scopefunc=asyncio.current_task)


@asynccontextmanager
async def scoped_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Get a scoped session with proper lifecycle management.

    Args:
        session_maker: Session maker to create scoped sessions from
    """
    factory = get_scoped_session_factory(session_maker)
    session = factory()
    try:
        await session.execute(text("PRAGMA foreign_keys=ON"))
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
        await factory.remove()


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()


def _create_engine_and_session(
    db_path: Path,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Internal helper to create engine and session maker."""
    db_url = get_db_url(db_path)
    logger.debug(f"Creating engine for db_url: {db_url}")
    engine = create_async_engine(db_url, connect_args={"check_same_thread": False})
    event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    return engine, session_maker


async def create_tables(engine: AsyncEngine) -> None:
    """Create entity and embedding tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_or_create_db(
    db_path: Path,
    ensure_tables: bool = True,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Get or create database engine and session maker for a specific database path."""
    db_key = str(db_path)

    if db_key not in _engines:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine, session_maker = _create_engine_and_session(db_path)
        _engines[db_key] = engine
        _session_makers[db_key] = session_maker

    engine = _engines[db_key]
    session_maker = _session_makers[db_key]

    if ensure_tables and not _tables_created.get(db_key, False):
        await create_tables(engine)
        _tables_created[db_key] = True
        logger.info(f"Database tables ready for: {db_path}")

    return engine, session_maker


async def shutdown_db() -> None:
    """Clean up all database connections."""
    for db_key, engine in _engines.items():
        await engine.dispose()
        logger.debug(f"Disposed engine for: {db_key}")

    _engines.clear()
    _session_makers.clear()
    _tables_created.clear()


@asynccontextmanager
async def engine_session_factory(
    db_path: Path,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]], None]:
    """Create an isolated engine and session factory with tables created.

    Note: This is primarily used for testing where we want a fresh database
    for each test. For production use, use get_or_create_db() instead.
    """
    engine, session_maker = _create_engine_and_session(db_path)
    try:
        await create_tables(engine)
        yield engine, session_maker
    finally:
        await engine.dispose()
