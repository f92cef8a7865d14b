"""ChallengeLifecycleService: creation, participation, closure and winners.

All writes to one challenge happen under its row lock
(:meth:`ChallengeRepository.get_for_update`), and inserts are backed by the
schema's unique constraints, so concurrent requests and the daily scheduler
cannot duplicate a participant or a day's challenge. Batch jobs wrap every
challenge in its own savepoint so a failing item rolls back alone.
"""

from __future__ import annotations

import calendar
import random
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from daily_challenge.clock import ReferenceClock
from daily_challenge.config import ChallengeSettings, get_settings
from daily_challenge.constants import ChallengeStatus, Provenance, SelectionMethod, Timeframe
from daily_challenge.exceptions import (
    AlreadyDecidedError,
    AlreadyParticipatedError,
    ChallengeClosedError,
    ChallengeDateConflictError,
    ChallengeDisabledError,
    ChallengeNotFoundError,
    DuplicateEntityError,
    InvalidSelectionMethodError,
    InvalidTimeframeError,
    NoParticipantsError,
    NotFoundError,
    ParticipantNotFoundError,
    ReferenceNotFoundError,
)
from daily_challenge.logging_config import get_logger
from daily_challenge.models import Challenge, ChallengeParticipant
from daily_challenge.repository import BlogProjection, ChallengeRepository
from daily_challenge.schemas import (
    BatchOutcome,
    ChallengeContent,
    ChallengeStatsResponse,
    ChallengeSummary,
    CreateChallengeRequest,
    LeaderboardEntry,
    WinnerEntry,
    WinnerResponse,
)
from daily_challenge.services.generator import ChallengeGenerator
from daily_challenge.services.text_generation import GeminiTextGenerator, TextGenerator
from daily_challenge.state_machine import is_terminal, validate_transition

logger = get_logger(__name__)

BADGES = {1: "gold", 2: "silver", 3: "bronze"}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def ai_score(blog: BlogProjection | None) -> float:
    """Placeholder heuristic: up to 10 points for length plus 2 per like."""
    if blog is None:
        return 0.0
    return min(blog.content_length / 100, 10) + 2 * blog.like_count


def like_score(blog: BlogProjection | None) -> float:
    return float(blog.like_count) if blog is not None else 0.0


def _rank(participants, blogs, scorer) -> list[tuple[ChallengeParticipant, float]]:
    # sorted() is stable, so equal scores keep submission order
    scored = [(p, scorer(blogs.get(p.blog_id))) for p in participants]
    return sorted(scored, key=lambda item: -item[1])


def rank_by_likes(
    participants: list[ChallengeParticipant], blogs: dict[UUID, BlogProjection]
) -> list[tuple[ChallengeParticipant, float]]:
    """Most-liked blog first; earliest submission wins a tie."""
    return _rank(participants, blogs, like_score)


def rank_by_ai_score(
    participants: list[ChallengeParticipant], blogs: dict[UUID, BlogProjection]
) -> list[tuple[ChallengeParticipant, float]]:
    return _rank(participants, blogs, ai_score)


def winner_response(challenge: Challenge) -> WinnerResponse | None:
    if not challenge.has_winner:
        return None
    return WinnerResponse(
        user_id=challenge.winner_user_id,
        blog_id=challenge.winner_blog_id,
        selected_at=challenge.winner_selected_at,
        selection_method=challenge.winner_selection_method,
        score=challenge.winner_score,
    )


class ChallengeLifecycleService:
    """Every stateful operation on the challenge store."""

    def __init__(
        self,
        repository: ChallengeRepository,
        generator: ChallengeGenerator,
        clock: ReferenceClock,
        rng: random.Random | None = None,
        leaderboard_max_limit: int = 100,
    ):
        self.repository = repository
        self.generator = generator
        self.clock = clock
        self.rng = rng or random.Random()
        self.leaderboard_max_limit = leaderboard_max_limit

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def get_todays_challenge(self) -> Challenge | None:
        """Today's active challenge, without generating one."""
        challenge = await self.repository.get_by_date(self.clock.today())
        if challenge is None or not challenge.is_active:
            return None
        return challenge

    async def ensure_todays_challenge(self) -> Challenge:
        """Return today's challenge, generating and storing it on first call."""
        today = self.clock.today()
        existing = await self.repository.get_by_date(today)
        if existing is not None:
            if not existing.is_active:
                raise ChallengeDisabledError(today.isoformat())
            logger.info(
                "todays_challenge_exists",
                challenge_id=str(existing.id),
                created_by=existing.created_by,
            )
            return existing

        content = await self.generator.generate_daily_challenge()
        provenance = Provenance.ai if content.is_ai_generated else Provenance.fallback
        challenge = self._build_challenge(content, today, provenance)

        try:
            async with self.repository.savepoint():
                await self.repository.add(challenge)
        except DuplicateEntityError:
            # Lost the race to another worker; theirs is the day's challenge
            winner = await self.repository.get_by_date(today)
            if winner is None:
                raise
            logger.info("todays_challenge_created_concurrently", challenge_id=str(winner.id))
            return winner

        logger.info(
            "challenge_created",
            challenge_id=str(challenge.id),
            date=today.isoformat(),
            category=challenge.category,
            created_by=challenge.created_by,
        )
        return challenge

    async def create_challenge(self, request: CreateChallengeRequest) -> Challenge:
        """Store an admin-written challenge for ``request.date``."""
        if await self.repository.get_by_date(request.date) is not None:
            raise ChallengeDateConflictError(request.date.isoformat())

        content = ChallengeContent(
            topic=request.topic,
            category=request.category,
            description=request.description,
            difficulty=request.difficulty,
            tags=request.tags,
        )
        content.metadata.generated_at = self.clock.now()
        challenge = self._build_challenge(content, request.date, Provenance.admin)

        try:
            async with self.repository.savepoint():
                await self.repository.add(challenge)
        except DuplicateEntityError as e:
            raise ChallengeDateConflictError(request.date.isoformat()) from e

        logger.info(
            "admin_challenge_created",
            challenge_id=str(challenge.id),
            date=request.date.isoformat(),
        )
        return challenge

    def _build_challenge(
        self, content: ChallengeContent, day, provenance: Provenance
    ) -> Challenge:
        now = self.clock.now()
        return Challenge(
            id=uuid4(),
            topic=content.topic,
            category=content.category,
            description=content.description,
            date=day,
            difficulty=content.difficulty,
            tags=list(content.tags),
            is_active=True,
            created_by=provenance.value,
            status=ChallengeStatus.active.value,
            participants=[],
            metadata_=content.metadata.model_dump(mode="json"),
            created_at=now,
            updated_at=now,
        )

    async def deactivate_challenge(self, challenge_id: UUID) -> Challenge:
        """Soft-disable a challenge; it keeps its date."""
        challenge = await self._load_locked(challenge_id)
        if challenge.is_active:
            challenge.is_active = False
            challenge.updated_at = self.clock.now()
            await self.repository.flush()
            logger.info("challenge_deactivated", challenge_id=str(challenge_id))
        return challenge

    # ------------------------------------------------------------------
    # Participation
    # ------------------------------------------------------------------

    async def _load_locked(self, challenge_id: UUID) -> Challenge:
        challenge = await self.repository.get_for_update(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return challenge

    async def has_user_participated(self, challenge_id: UUID, user_id: UUID) -> bool:
        challenge = await self.repository.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return challenge.has_user_participated(user_id)

    async def add_participation(
        self, challenge_id: UUID, user_id: UUID, blog_id: UUID
    ) -> Challenge:
        """Record ``user_id``'s submission of ``blog_id``."""
        challenge = await self._load_locked(challenge_id)

        if challenge.has_user_participated(user_id):
            raise AlreadyParticipatedError(str(challenge_id), str(user_id))
        if not challenge.is_active:
            raise ChallengeClosedError(str(challenge_id), "disabled")
        if challenge.status != ChallengeStatus.active.value:
            raise ChallengeClosedError(str(challenge_id), challenge.status)

        now = self.clock.now()
        participant = ChallengeParticipant(
            challenge_id=challenge.id,
            user_id=user_id,
            blog_id=blog_id,
            submitted_at=now,
        )
        try:
            async with self.repository.savepoint():
                challenge.participants.append(participant)
                challenge.updated_at = now
                await self.repository.flush()
        except DuplicateEntityError as e:
            raise AlreadyParticipatedError(str(challenge_id), str(user_id)) from e
        except ReferenceNotFoundError as e:
            raise NotFoundError("User or blog", f"{user_id}/{blog_id}") from e

        logger.info(
            "participation_added",
            challenge_id=str(challenge_id),
            user_id=str(user_id),
            blog_id=str(blog_id),
            participants=len(challenge.participants),
        )
        return challenge

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def _end(self, challenge: Challenge) -> bool:
        """active -> ended; returns False when the challenge was not active."""
        if challenge.status != ChallengeStatus.active.value:
            return False
        validate_transition(challenge.status, ChallengeStatus.ended)
        challenge.status = ChallengeStatus.ended.value
        challenge.updated_at = self.clock.now()
        return True

    async def end_challenge(self, challenge_id: UUID) -> Challenge:
        challenge = await self._load_locked(challenge_id)
        if self._end(challenge):
            await self.repository.flush()
            logger.info("challenge_ended", challenge_id=str(challenge_id))
        else:
            logger.info(
                "challenge_end_skipped",
                challenge_id=str(challenge_id),
                status=challenge.status,
            )
        return challenge

    async def end_yesterdays_challenges(self) -> list[BatchOutcome]:
        """Close every challenge dated yesterday that is still active."""
        yesterday = self.clock.yesterday()
        challenges = await self.repository.list_by_date_and_status(
            yesterday, ChallengeStatus.active.value
        )

        results: list[BatchOutcome] = []
        for challenge in challenges:
            # The row may be expired once a savepoint rolls back
            challenge_id, topic = challenge.id, challenge.topic
            try:
                async with self.repository.savepoint():
                    locked = await self._load_locked(challenge_id)
                    ended = self._end(locked)
                    await self.repository.flush()
                results.append(
                    BatchOutcome(
                        challenge_id=locked.id,
                        topic=locked.topic,
                        status="ended" if ended else "skipped",
                        participants=len(locked.participants),
                    )
                )
            except Exception as exc:
                logger.error(
                    "challenge_end_failed",
                    challenge_id=str(challenge_id),
                    error=str(exc),
                )
                results.append(
                    BatchOutcome(
                        challenge_id=challenge_id,
                        topic=topic,
                        status="failed",
                        error=str(exc),
                    )
                )

        if results:
            logger.info(
                "yesterdays_challenges_processed",
                date=yesterday.isoformat(),
                ended=sum(1 for r in results if r.status == "ended"),
                failed=sum(1 for r in results if r.status == "failed"),
            )
        return results

    # ------------------------------------------------------------------
    # Winner selection
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_method(method: str | SelectionMethod) -> SelectionMethod:
        try:
            parsed = SelectionMethod(method)
        except ValueError as e:
            raise InvalidSelectionMethodError(str(method)) from e
        if parsed is SelectionMethod.manual:
            raise InvalidSelectionMethodError(
                parsed.value,
                "Manual selection requires a specific winner; use select_winner_manually",
            )
        return parsed

    def _record_winner(
        self,
        challenge: Challenge,
        participant: ChallengeParticipant,
        method: SelectionMethod,
        score: float | None,
    ) -> None:
        if challenge.status == ChallengeStatus.active.value:
            self._end(challenge)
        validate_transition(challenge.status, ChallengeStatus.winner_selected)

        now = self.clock.now()
        challenge.winner_user_id = participant.user_id
        challenge.winner_blog_id = participant.blog_id
        challenge.winner_selected_at = now
        challenge.winner_selection_method = method.value
        challenge.winner_score = score
        challenge.status = ChallengeStatus.winner_selected.value
        challenge.updated_at = now

    async def select_winner(
        self, challenge_id: UUID, method: str | SelectionMethod = SelectionMethod.likes
    ) -> Challenge:
        """Pick a winner by likes, at random, or by the AI scoring heuristic."""
        selection = self._parse_method(method)
        challenge = await self._load_locked(challenge_id)

        participants = list(challenge.participants)
        if not participants:
            raise NoParticipantsError(str(challenge_id))
        if is_terminal(challenge.status):
            raise AlreadyDecidedError(str(challenge_id))

        if selection is SelectionMethod.random:
            chosen, score = self.rng.choice(participants), None
        else:
            blogs = await self.repository.get_blog_projections(
                [p.blog_id for p in participants]
            )
            missing = [str(p.blog_id) for p in participants if p.blog_id not in blogs]
            if missing:
                logger.warning(
                    "participant_blogs_missing",
                    challenge_id=str(challenge_id),
                    blog_ids=missing,
                )
            rank = rank_by_ai_score if selection is SelectionMethod.ai_scoring else rank_by_likes
            chosen, score = rank(participants, blogs)[0]

        self._record_winner(challenge, chosen, selection, score)
        await self.repository.flush()

        logger.info(
            "winner_selected",
            challenge_id=str(challenge_id),
            user_id=str(chosen.user_id),
            method=selection.value,
            score=score,
        )
        return challenge

    async def select_winner_manually(
        self, challenge_id: UUID, user_id: UUID, blog_id: UUID
    ) -> Challenge:
        """Crown a specific (user, blog) submission."""
        challenge = await self._load_locked(challenge_id)
        if is_terminal(challenge.status):
            raise AlreadyDecidedError(str(challenge_id))

        participant = challenge.find_participant(user_id, blog_id)
        if participant is None:
            raise ParticipantNotFoundError(str(challenge_id), str(user_id), str(blog_id))

        self._record_winner(challenge, participant, SelectionMethod.manual, None)
        await self.repository.flush()

        logger.info(
            "winner_selected",
            challenge_id=str(challenge_id),
            user_id=str(user_id),
            method=SelectionMethod.manual.value,
        )
        return challenge

    async def auto_select_winners(self) -> list[BatchOutcome]:
        """Select by likes for every ended challenge that still lacks a winner."""
        challenges = await self.repository.list_needing_winners()

        results: list[BatchOutcome] = []
        for challenge in challenges:
            # The row may be expired once a savepoint rolls back
            challenge_id, topic = challenge.id, challenge.topic
            try:
                async with self.repository.savepoint():
                    updated = await self.select_winner(challenge_id, SelectionMethod.likes)
                results.append(
                    BatchOutcome(
                        challenge_id=updated.id,
                        topic=updated.topic,
                        status="success",
                        participants=len(updated.participants),
                        winner=winner_response(updated),
                    )
                )
            except Exception as exc:
                logger.error(
                    "auto_winner_selection_failed",
                    challenge_id=str(challenge_id),
                    error=str(exc),
                )
                results.append(
                    BatchOutcome(
                        challenge_id=challenge_id,
                        topic=topic,
                        status="failed",
                        error=str(exc),
                    )
                )

        if results:
            logger.info(
                "auto_winner_selection_complete",
                selected=sum(1 for r in results if r.status == "success"),
                failed=sum(1 for r in results if r.status == "failed"),
            )
        return results

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_challenge_summary(self, challenge_id: UUID) -> ChallengeSummary:
        challenge = await self.repository.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return ChallengeSummary(
            challenge_id=challenge.id,
            total_participants=len(challenge.participants),
            has_winner=challenge.has_winner,
            winner=winner_response(challenge),
            status=challenge.status,
        )

    async def get_challenge_stats(self) -> ChallengeStatsResponse:
        total = await self.repository.count_challenges()
        active = await self.repository.count_challenges(active_only=True)
        todays = await self.get_todays_challenge()
        participations = await self.repository.count_participations()
        by_provenance = await self.repository.count_by_provenance()

        ai_generated = by_provenance.get(Provenance.ai.value, 0)
        return ChallengeStatsResponse(
            total_challenges=total,
            active_challenges=active,
            todays_challenge=todays is not None,
            total_participations=participations,
            ai_generated_challenges=ai_generated,
            fallback_challenges=by_provenance.get(Provenance.fallback.value, 0),
            admin_challenges=by_provenance.get(Provenance.admin.value, 0),
            ai_success_rate=int(ai_generated * 100 / total + 0.5) if total else 0,
        )

    def _window_start(self, timeframe: str | Timeframe) -> datetime | None:
        try:
            window = Timeframe(timeframe)
        except ValueError as e:
            raise InvalidTimeframeError(str(timeframe)) from e

        now = self.clock.now()
        if window is Timeframe.week:
            return now - timedelta(days=7)
        if window is Timeframe.month:
            local = now.astimezone(self.clock.tz)
            year, month = (local.year, local.month - 1) if local.month > 1 else (local.year - 1, 12)
            day = min(local.day, calendar.monthrange(year, month)[1])
            return local.replace(year=year, month=month, day=day)
        return None

    def _clamp_limit(self, limit: int) -> int:
        return max(1, min(limit, self.leaderboard_max_limit))

    async def get_leaderboard(
        self, timeframe: str | Timeframe = Timeframe.all, limit: int = 10
    ) -> list[LeaderboardEntry]:
        """Users ranked by challenges completed within the timeframe."""
        since = self._window_start(timeframe)
        tallies = await self.repository.participation_tallies(since, self._clamp_limit(limit))
        wins = await self.repository.count_wins([t.user_id for t in tallies], since)

        return [
            LeaderboardEntry(
                rank=rank,
                user_id=tally.user_id,
                username=tally.username,
                completions=tally.completions,
                wins=wins.get(tally.user_id, 0),
                last_participated_at=tally.last_participated_at,
                badge=BADGES.get(rank),
            )
            for rank, tally in enumerate(tallies, 1)
        ]

    async def get_challenge_winners(
        self, timeframe: str | Timeframe = Timeframe.all, limit: int = 10
    ) -> list[WinnerEntry]:
        """Most recent winners first."""
        since = self._window_start(timeframe)
        rows = await self.repository.list_winners(since, self._clamp_limit(limit))
        return [
            WinnerEntry(
                challenge_id=row.challenge.id,
                topic=row.challenge.topic,
                date=row.challenge.date,
                user_id=row.challenge.winner_user_id,
                username=row.username,
                blog_id=row.challenge.winner_blog_id,
                blog_title=row.blog_title,
                selected_at=row.challenge.winner_selected_at,
                selection_method=row.challenge.winner_selection_method,
                score=row.challenge.winner_score,
            )
            for row in rows
        ]


def build_lifecycle_service(
    session: AsyncSession,
    settings: ChallengeSettings | None = None,
    text_generator: TextGenerator | None = None,
    clock: ReferenceClock | None = None,
) -> ChallengeLifecycleService:
    """Wire a service onto ``session`` with the configured generator and clock."""
    settings = settings or get_settings()
    if text_generator is None:
        text_generator = GeminiTextGenerator(settings)
    return ChallengeLifecycleService(
        repository=ChallengeRepository(session),
        generator=ChallengeGenerator(
            text_generator, timeout_seconds=settings.generation_timeout_seconds
        ),
        clock=clock or ReferenceClock(settings.reference_timezone),
        leaderboard_max_limit=settings.leaderboard_max_limit,
    )
