"""Engine and sessions for the challenge store.

The store is one PostgreSQL schema holding challenges and participants next
to the blogging core's ``users``, ``blogs`` and ``blog_likes`` tables. The
engine is built once per process from :class:`ChallengeSettings`.

A session is one unit of work. Row locks taken by
``ChallengeRepository.get_for_update`` live until that session commits or
rolls back, so callers keep a session open only for a single command or a
single scheduler step.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from daily_challenge.config import ChallengeSettings, get_settings
from daily_challenge.logging_config import get_logger
from daily_challenge.models import Base

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def normalize_database_url(url: str) -> str:
    """Force the asyncpg driver onto plain postgres URLs.

    Hosting providers hand out ``postgres://`` URLs; the challenge store only
    runs on asyncpg.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(settings: ChallengeSettings, url: str | None = None) -> AsyncEngine:
    """Create an engine for the challenge store.

    Args:
        settings: Pool sizing and echo flags.
        url: Overrides ``settings.database_url`` (the test suite points this
            at a throwaway database).
    """
    database_url = normalize_database_url(url or settings.database_url)
    engine = create_async_engine(
        database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    logger.info(
        "challenge_store_engine_created",
        url=make_url(database_url).render_as_string(hide_password=True),
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    return engine


def get_engine() -> AsyncEngine:
    """Process-wide engine, built from :func:`get_settings` on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the CLI and the scheduler.

    Objects stay readable after commit so command results can be serialized
    once the transaction is closed. Autoflush is off; the repository flushes
    explicitly so unique violations surface at a known call.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def init_db() -> None:
    """Check that the challenge store answers before creating tables."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("challenge_store_reachable")
    except Exception as e:
        logger.error("challenge_store_unreachable", error=str(e))
        raise


async def create_schema() -> None:
    """Create missing tables, constraints and indexes (``daily-challenge init-db``)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("challenge_schema_created", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("challenge_store_closed")


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for one CLI command. Rolls back, releasing row locks, if the block raises."""
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
