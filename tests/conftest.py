"""Shared pytest fixtures for the daily challenge service.

This module provides:
- A mock ChallengeRepository with a pass-through savepoint
- A FixedClock pinned to a known reference-timezone day
- A stub generative text service
- A rolled-back session on a real PostgreSQL database, when one is configured
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from daily_challenge.clock import FixedClock
from daily_challenge.config import ChallengeSettings
from daily_challenge.database import build_engine
from daily_challenge.models import Base


# ===========================================
# LOGGING
# ===========================================


@pytest.fixture(autouse=True, scope="session")
def quiet_logging():
    """Keep structlog output off stdout so CLI tests can parse it."""
    structlog.configure(
        processors=[structlog.processors.add_log_level],
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


# ===========================================
# TIME
# ===========================================

# 11:00 in New York on 2026-03-10
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW, "America/New_York")


# ===========================================
# GENERATIVE TEXT SERVICE
# ===========================================


class StubTextGenerator:
    """Stands in for the Gemini client; returns ``reply`` or raises ``error``."""

    def __init__(self, reply: str = "", configured: bool = True, model: str = "stub-model"):
        self.reply = reply
        self.error: Exception | None = None
        self.delay: float = 0.0
        self.configured = configured
        self.model = model
        self.prompts: list[str] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def text_generator() -> StubTextGenerator:
    return StubTextGenerator(
        reply=(
            '```json\n{"topic": "Writing With Constraints", '
            '"description": "Write a post using only words of one syllable.", '
            '"tags": ["craft", "constraints"]}\n```'
        )
    )


# ===========================================
# REPOSITORY
# ===========================================


@asynccontextmanager
async def _savepoint():
    yield


@pytest.fixture
def repository() -> AsyncMock:
    """Mock ChallengeRepository; tests set the return values they rely on."""
    repo = AsyncMock()
    repo.savepoint = _savepoint
    repo.get_by_id.return_value = None
    repo.get_for_update.return_value = None
    repo.get_by_date.return_value = None
    repo.list_by_date_and_status.return_value = []
    repo.list_needing_winners.return_value = []
    repo.list_winners.return_value = []
    repo.get_blog_projections.return_value = {}
    repo.participation_tallies.return_value = []
    repo.count_wins.return_value = {}
    repo.count_by_provenance.return_value = {}
    repo.count_challenges.return_value = 0
    repo.count_participations.return_value = 0
    return repo


# ===========================================
# DATABASE
# ===========================================


@pytest_asyncio.fixture
async def real_db_session() -> AsyncIterator[AsyncSession]:
    """Session on a real PostgreSQL database, rolled back after the test.

    Set ``CHALLENGE_TEST_DATABASE_URL`` to a disposable database to run
    these tests; they are skipped otherwise.
    """
    url = os.environ.get("CHALLENGE_TEST_DATABASE_URL")
    if not url:
        pytest.skip("CHALLENGE_TEST_DATABASE_URL is not set")

    engine = build_engine(ChallengeSettings(), url=url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
    await engine.dispose()
