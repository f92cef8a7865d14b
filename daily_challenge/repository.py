"""ChallengeRepository: the challenge store over an async SQLAlchemy session.

Every method that touches the database translates driver failures into the
typed errors the service understands:

* unique violations become ``DuplicateEntityError``
* foreign key violations become ``ReferenceNotFoundError``
* connection failures become ``StoreUnavailableError``
"""

from __future__ import annotations

import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import ParamSpec, TypeVar
from uuid import UUID

from sqlalchemy import desc, exists, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from daily_challenge.constants import ChallengeStatus
from daily_challenge.exceptions import (
    DuplicateEntityError,
    ReferenceNotFoundError,
    StoreUnavailableError,
)
from daily_challenge.logging_config import get_logger
from daily_challenge.models import Blog, BlogLike, Challenge, ChallengeParticipant, User

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


@dataclass(frozen=True)
class BlogProjection:
    id: UUID
    title: str
    author_id: UUID
    like_count: int
    content_length: int


@dataclass(frozen=True)
class ParticipationTally:
    user_id: UUID
    username: str | None
    completions: int
    last_participated_at: datetime | None


@dataclass(frozen=True)
class WinnerRow:
    challenge: Challenge
    username: str | None
    blog_title: str | None


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _constraint_name(exc: DBAPIError) -> str | None:
    cause = getattr(exc.orig, "__cause__", None)
    return getattr(cause, "constraint_name", None)


def store_operation(
    entity_type: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Translate SQLAlchemy/driver errors raised by a repository coroutine."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await func(*args, **kwargs)
            except IntegrityError as exc:
                state = _sqlstate(exc)
                if state == UNIQUE_VIOLATION:
                    raise DuplicateEntityError(entity_type, _constraint_name(exc)) from exc
                if state == FOREIGN_KEY_VIOLATION:
                    raise ReferenceNotFoundError(entity_type, _constraint_name(exc)) from exc
                raise
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.error(
                    "challenge_store_unavailable",
                    operation=func.__name__,
                    error_type=type(exc).__name__,
                )
                raise StoreUnavailableError(func.__name__) from exc
            except DBAPIError as exc:
                if exc.connection_invalidated:
                    logger.error("challenge_store_connection_lost", operation=func.__name__)
                    raise StoreUnavailableError(func.__name__) from exc
                raise

        return wrapper

    return decorator


class ChallengeRepository:
    """Reads and writes challenges and participants; reads blog projections."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Nested transaction; a failure inside rolls back only this block."""
        async with self.session.begin_nested():
            yield

    @store_operation("Challenge")
    async def flush(self) -> None:
        await self.session.flush()

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    @store_operation("Challenge")
    async def get_by_id(self, challenge_id: UUID) -> Challenge | None:
        result = await self.session.execute(
            select(Challenge).where(Challenge.id == challenge_id)
        )
        return result.scalar_one_or_none()

    @store_operation("Challenge")
    async def get_for_update(self, challenge_id: UUID) -> Challenge | None:
        """Load a challenge and hold its row lock until the transaction ends."""
        result = await self.session.execute(
            select(Challenge)
            .where(Challenge.id == challenge_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @store_operation("Challenge")
    async def get_by_date(self, day: date) -> Challenge | None:
        result = await self.session.execute(select(Challenge).where(Challenge.date == day))
        return result.scalar_one_or_none()

    @store_operation("Challenge")
    async def add(self, challenge: Challenge) -> Challenge:
        self.session.add(challenge)
        await self.session.flush()
        return challenge

    @store_operation("Challenge")
    async def list_by_date_and_status(self, day: date, status: str) -> list[Challenge]:
        result = await self.session.execute(
            select(Challenge)
            .where(Challenge.date == day, Challenge.status == status)
            .order_by(Challenge.created_at)
        )
        return list(result.scalars().all())

    @store_operation("Challenge")
    async def list_needing_winners(self) -> list[Challenge]:
        """Ended challenges with at least one participant and no winner yet."""
        has_participants = exists().where(ChallengeParticipant.challenge_id == Challenge.id)
        result = await self.session.execute(
            select(Challenge)
            .where(
                Challenge.status == ChallengeStatus.ended.value,
                Challenge.winner_user_id.is_(None),
                has_participants,
            )
            .order_by(Challenge.date)
        )
        return list(result.scalars().all())

    @store_operation("Challenge")
    async def list_winners(self, since: datetime | None, limit: int) -> list[WinnerRow]:
        query = (
            select(Challenge, User.username, Blog.title)
            .outerjoin(User, User.id == Challenge.winner_user_id)
            .outerjoin(Blog, Blog.id == Challenge.winner_blog_id)
            .where(Challenge.status == ChallengeStatus.winner_selected.value)
        )
        if since is not None:
            query = query.where(Challenge.winner_selected_at >= since)
        query = query.order_by(desc(Challenge.winner_selected_at)).limit(limit)

        result = await self.session.execute(query)
        return [
            WinnerRow(challenge=row[0], username=row[1], blog_title=row[2])
            for row in result.all()
        ]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    @store_operation("Challenge")
    async def count_challenges(self, active_only: bool = False) -> int:
        query = select(func.count()).select_from(Challenge)
        if active_only:
            query = query.where(Challenge.is_active.is_(True))
        return (await self.session.execute(query)).scalar() or 0

    @store_operation("ChallengeParticipant")
    async def count_participations(self) -> int:
        query = select(func.count()).select_from(ChallengeParticipant)
        return (await self.session.execute(query)).scalar() or 0

    @store_operation("Challenge")
    async def count_by_provenance(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Challenge.created_by, func.count()).group_by(Challenge.created_by)
        )
        return {created_by: count for created_by, count in result.all()}

    @store_operation("ChallengeParticipant")
    async def participation_tallies(
        self, since: datetime | None, limit: int
    ) -> list[ParticipationTally]:
        """Completions per user, most first, ties broken by most recent entry."""
        completions = func.count(ChallengeParticipant.sequence).label("completions")
        last_at = func.max(ChallengeParticipant.submitted_at).label("last_participated_at")
        query = (
            select(ChallengeParticipant.user_id, User.username, completions, last_at)
            .outerjoin(User, User.id == ChallengeParticipant.user_id)
            .group_by(ChallengeParticipant.user_id, User.username)
        )
        if since is not None:
            query = query.where(ChallengeParticipant.submitted_at >= since)
        query = query.order_by(desc(completions), desc(last_at)).limit(limit)

        result = await self.session.execute(query)
        return [
            ParticipationTally(
                user_id=row.user_id,
                username=row.username,
                completions=row.completions,
                last_participated_at=row.last_participated_at,
            )
            for row in result.all()
        ]

    @store_operation("Challenge")
    async def count_wins(
        self, user_ids: list[UUID], since: datetime | None
    ) -> dict[UUID, int]:
        if not user_ids:
            return {}
        query = (
            select(Challenge.winner_user_id, func.count())
            .where(Challenge.winner_user_id.in_(user_ids))
            .group_by(Challenge.winner_user_id)
        )
        if since is not None:
            query = query.where(Challenge.winner_selected_at >= since)
        result = await self.session.execute(query)
        return {user_id: count for user_id, count in result.all()}

    # ------------------------------------------------------------------
    # Blog read projections
    # ------------------------------------------------------------------

    @store_operation("Blog")
    async def get_blog_projections(self, blog_ids: list[UUID]) -> dict[UUID, BlogProjection]:
        if not blog_ids:
            return {}
        like_counts = (
            select(BlogLike.blog_id, func.count().label("like_count"))
            .where(BlogLike.blog_id.in_(blog_ids))
            .group_by(BlogLike.blog_id)
            .subquery()
        )
        result = await self.session.execute(
            select(
                Blog.id,
                Blog.title,
                Blog.author_id,
                func.coalesce(like_counts.c.like_count, 0).label("like_count"),
                func.char_length(Blog.content).label("content_length"),
            )
            .outerjoin(like_counts, like_counts.c.blog_id == Blog.id)
            .where(Blog.id.in_(blog_ids))
        )
        return {
            row.id: BlogProjection(
                id=row.id,
                title=row.title,
                author_id=row.author_id,
                like_count=row.like_count,
                content_length=row.content_length or 0,
            )
            for row in result.all()
        }
