import logging
from pathlib import Path
from typing import AsyncIterator, Any, Generator, AsyncGenerator

from fastapi import Depends, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from loveplate.utils import get_settings

_engine: AsyncEngine | None = None

log = logging.getLogger(__name__)

PHOTOS_TABLE = """
CREATE TABLE IF NOT EXISTS photos (
    id TEXT PRIMARY KEY,
    storage_path TEXT NOT NULL,
    thumbnail_path TEXT NOT NULL,
    dish_name TEXT,
    description_en TEXT,
    description_cn TEXT,
    original_filename TEXT,
    file_size INTEGER,
    width INTEGER,
    height INTEGER,
    captured_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    uploaded_by TEXT
)
"""

PHOTOS_CREATED_AT_INDEX = (
    "CREATE INDEX IF NOT EXISTS photos_created_at ON photos (created_at DESC)"
)


async def open_database_conn_pool(url: str | None = None):
    global _engine
    if _engine:
        return

    if url is None:
        Path(get_settings().db_file).parent.mkdir(parents=True, exist_ok=True)
        url = get_settings().sqlite_db

    log.info("Opening database connection pool")
    _engine = create_async_engine(
        url,
        pool_pre_ping=True,
    )
    log.info("Database connection pool opened")


def get_engine() -> Generator[AsyncEngine, Any, None]:
    if not _engine:
        raise ValueError(
            "Database engine is not set. Call open_database_conn_pool first."
        )

    yield _engine


async def close_database_conn_pool():
    global _engine
    if _engine:
        log.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        log.info("Database connection pool closed")


async def get_sessionmaker(
    engine: AsyncEngine = Depends(get_engine),
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    yield async_sessionmaker(engine, expire_on_commit=False)


async def get_session(
    async_session: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except (HTTPException, RequestValidationError):
            # client errors keep their 4xx response
            await session.rollback()
            raise
        except Exception:
            await session.rollback()
            log.exception("Unhandled exception during database session")
            raise HTTPException(
                status_code=500,
                detail="Internal server error",
            )


async def init_db():
    """Creates the photos table and its index."""
    try:
        async with _engine.begin() as conn:
            log.info("Creating database tables if they do not exist")
            await conn.execute(text(PHOTOS_TABLE))
            await conn.execute(text(PHOTOS_CREATED_AT_INDEX))
    except OperationalError:
        log.error(
            "Could not create the photos table. Check that the database "
            "file is writable and restart the server."
        )
        raise

    log.info("Database tables created or already exist")


__all__ = [
    "open_database_conn_pool",
    "close_database_conn_pool",
    "get_engine",
    "get_sessionmaker",
    "get_session",
    "init_db",
]
