"""Unit tests for ChallengeLifecycleService: creation, participation, closure, winners."""

from __future__ import annotations

import random
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from structlog.testing import capture_logs

from daily_challenge.clock import FixedClock
from daily_challenge.exceptions import (
    AlreadyDecidedError,
    AlreadyParticipatedError,
    ChallengeClosedError,
    ChallengeDateConflictError,
    ChallengeDisabledError,
    ChallengeNotFoundError,
    ChallengeServiceError,
    DuplicateEntityError,
    InvalidSelectionMethodError,
    InvalidTimeframeError,
    NoParticipantsError,
    NotFoundError,
    ParticipantNotFoundError,
    ReferenceNotFoundError,
    StoreUnavailableError,
)
from daily_challenge.models import Challenge, ChallengeParticipant
from daily_challenge.repository import BlogProjection, ParticipationTally, WinnerRow
from daily_challenge.schemas import CreateChallengeRequest
from daily_challenge.services.challenge_service import (
    ChallengeLifecycleService,
    ai_score,
    rank_by_ai_score,
    rank_by_likes,
)
from daily_challenge.services.generator import ChallengeGenerator

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)
YESTERDAY = date(2026, 3, 9)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_participant(user_id=None, blog_id=None, minutes: int = 0):
    return ChallengeParticipant(
        user_id=user_id or uuid4(),
        blog_id=blog_id or uuid4(),
        submitted_at=NOW + timedelta(minutes=minutes),
    )


def _make_challenge(
    day: date = TODAY,
    status: str = "active",
    is_active: bool = True,
    participants: list | None = None,
    created_by: str = "AI",
):
    """Return a transient Challenge row with every column set."""
    return Challenge(
        id=uuid4(),
        topic="Test topic",
        category="Technology",
        description="A test challenge description",
        date=day,
        difficulty="Medium",
        tags=["test"],
        is_active=is_active,
        created_by=created_by,
        status=status,
        participants=participants or [],
        metadata_={},
        created_at=NOW,
        updated_at=NOW,
    )


def _make_decided_challenge():
    participant = _make_participant()
    challenge = _make_challenge(status="winner_selected", participants=[participant])
    challenge.winner_user_id = participant.user_id
    challenge.winner_blog_id = participant.blog_id
    challenge.winner_selected_at = NOW
    challenge.winner_selection_method = "likes"
    challenge.winner_score = 1.0
    return challenge


def _blog(blog_id, likes: int, length: int = 500) -> BlogProjection:
    return BlogProjection(
        id=blog_id,
        title=f"Blog with {likes} likes",
        author_id=uuid4(),
        like_count=likes,
        content_length=length,
    )


def _make_service(repository, clock, text_generator=None, seed: int = 3):
    generator = ChallengeGenerator(
        text_generator, timeout_seconds=1.0, rng=random.Random(seed)
    )
    return ChallengeLifecycleService(
        repository, generator, clock, rng=random.Random(seed), leaderboard_max_limit=100
    )


def _lock(repository, *challenges):
    """Serve get_for_update/get_by_id from the given challenges."""
    by_id = {c.id: c for c in challenges}
    repository.get_for_update.side_effect = lambda challenge_id: by_id.get(challenge_id)
    repository.get_by_id.side_effect = lambda challenge_id: by_id.get(challenge_id)


class _ExpiringRow:
    """A listed challenge whose attributes stop loading once its savepoint rolls back."""

    def __init__(self, challenge: Challenge):
        self._challenge = challenge
        self.expired = False

    def __getattr__(self, name):
        if self.expired:
            raise RuntimeError(f"lazy load of {name} after rollback")
        return getattr(self._challenge, name)


def _expire_on_rollback(repository, *rows):
    @asynccontextmanager
    async def savepoint():
        try:
            yield
        except Exception:
            for row in rows:
                row.expired = True
            raise

    repository.savepoint = savepoint


# ---------------------------------------------------------------------------
# 1. Pure scoring helpers
# ---------------------------------------------------------------------------


class TestScoring:
    def test_ai_score_formula(self):
        assert ai_score(_blog(uuid4(), likes=3, length=250)) == pytest.approx(8.5)

    def test_ai_score_length_capped(self):
        assert ai_score(_blog(uuid4(), likes=0, length=50_000)) == 10

    def test_ai_score_missing_blog(self):
        assert ai_score(None) == 0.0

    def test_rank_by_likes_orders_descending(self):
        a, b, c = _make_participant(), _make_participant(minutes=1), _make_participant(minutes=2)
        blogs = {
            a.blog_id: _blog(a.blog_id, 1),
            b.blog_id: _blog(b.blog_id, 7),
            c.blog_id: _blog(c.blog_id, 3),
        }

        ranked = rank_by_likes([a, b, c], blogs)

        assert [p for p, _ in ranked] == [b, c, a]
        assert [score for _, score in ranked] == [7, 3, 1]

    def test_rank_by_likes_tie_keeps_submission_order(self):
        first, second = _make_participant(), _make_participant(minutes=5)
        blogs = {p.blog_id: _blog(p.blog_id, 4) for p in (first, second)}

        assert rank_by_likes([first, second], blogs)[0][0] is first

    def test_rank_by_ai_score(self):
        long_post, popular = _make_participant(), _make_participant(minutes=1)
        blogs = {
            long_post.blog_id: _blog(long_post.blog_id, likes=1, length=1500),
            popular.blog_id: _blog(popular.blog_id, likes=4, length=200),
        }

        winner, score = rank_by_ai_score([long_post, popular], blogs)[0]

        assert winner is long_post
        assert score == pytest.approx(12.0)


# ---------------------------------------------------------------------------
# 2. ensure_todays_challenge / create_challenge
# ---------------------------------------------------------------------------


class TestEnsureTodaysChallenge:
    @pytest.mark.asyncio
    async def test_creates_ai_challenge(self, repository, clock, text_generator):
        service = _make_service(repository, clock, text_generator)

        challenge = await service.ensure_todays_challenge()

        repository.add.assert_awaited_once_with(challenge)
        assert challenge.date == TODAY
        assert challenge.status == "active"
        assert challenge.is_active is True
        assert challenge.created_by == "AI"
        assert challenge.topic == "Writing With Constraints"
        assert challenge.participants == []
        assert challenge.winner_user_id is None
        assert challenge.metadata_["is_ai_generated"] is True

    @pytest.mark.asyncio
    async def test_fallback_provenance(self, repository, clock, text_generator):
        text_generator.configured = False
        service = _make_service(repository, clock, text_generator)

        challenge = await service.ensure_todays_challenge()

        assert challenge.created_by == "Fallback"
        assert challenge.metadata_["is_ai_generated"] is False

    @pytest.mark.asyncio
    async def test_idempotent(self, repository, clock, text_generator):
        service = _make_service(repository, clock, text_generator)

        first = await service.ensure_todays_challenge()
        repository.get_by_date.return_value = first
        second = await service.ensure_todays_challenge()

        assert first.id == second.id
        repository.add.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_returned_without_generation(self, repository, clock, text_generator):
        existing = _make_challenge()
        repository.get_by_date.return_value = existing
        service = _make_service(repository, clock, text_generator)

        result = await service.ensure_todays_challenge()

        assert result is existing
        assert text_generator.prompts == []
        repository.add.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_challenge_blocks_day(self, repository, clock, text_generator):
        repository.get_by_date.return_value = _make_challenge(is_active=False)
        service = _make_service(repository, clock, text_generator)

        with pytest.raises(ChallengeDisabledError):
            await service.ensure_todays_challenge()
        repository.add.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_stored_challenge(
        self, repository, clock, text_generator
    ):
        stored = _make_challenge()
        repository.get_by_date.side_effect = [None, stored]
        repository.add.side_effect = DuplicateEntityError("Challenge", "uq_challenge_date")
        service = _make_service(repository, clock, text_generator)

        result = await service.ensure_todays_challenge()

        assert result is stored

    @pytest.mark.asyncio
    async def test_today_follows_reference_timezone(self, repository, text_generator):
        # 23:30 on the 10th in New York is already the 11th in UTC
        late = FixedClock(datetime(2026, 3, 11, 3, 30, tzinfo=timezone.utc))
        service = _make_service(repository, late, text_generator)

        challenge = await service.ensure_todays_challenge()

        repository.get_by_date.assert_awaited_with(TODAY)
        assert challenge.date == TODAY


class TestCreateChallenge:
    def _request(self, day=date(2026, 3, 12)):
        return CreateChallengeRequest(
            topic="Admin topic",
            category="Food",
            description="Written by an editor",
            date=day,
            difficulty="Hard",
            tags=["editorial"],
        )

    @pytest.mark.asyncio
    async def test_admin_provenance(self, repository, clock):
        service = _make_service(repository, clock)

        challenge = await service.create_challenge(self._request())

        assert challenge.created_by == "Admin"
        assert challenge.date == date(2026, 3, 12)
        assert challenge.metadata_["is_ai_generated"] is False
        repository.add.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_date_taken(self, repository, clock):
        repository.get_by_date.return_value = _make_challenge(day=date(2026, 3, 12))
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeDateConflictError):
            await service.create_challenge(self._request())

    @pytest.mark.asyncio
    async def test_date_taken_concurrently(self, repository, clock):
        repository.add.side_effect = DuplicateEntityError("Challenge")
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeDateConflictError):
            await service.create_challenge(self._request())

    def test_request_rejects_unknown_category(self):
        with pytest.raises(ValueError):
            CreateChallengeRequest(
                topic="t", category="Astrology", description="d", date=TODAY
            )


class TestTodaysChallengeAndDeactivate:
    @pytest.mark.asyncio
    async def test_get_todays_challenge_hides_disabled(self, repository, clock):
        repository.get_by_date.return_value = _make_challenge(is_active=False)
        service = _make_service(repository, clock)

        assert await service.get_todays_challenge() is None

    @pytest.mark.asyncio
    async def test_get_todays_challenge_does_not_generate(self, repository, clock, text_generator):
        service = _make_service(repository, clock, text_generator)

        assert await service.get_todays_challenge() is None
        assert text_generator.prompts == []

    @pytest.mark.asyncio
    async def test_deactivate(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.deactivate_challenge(challenge.id)

        assert result.is_active is False
        assert result.date == TODAY
        repository.flush.assert_awaited_once()


# ---------------------------------------------------------------------------
# 3. add_participation
# ---------------------------------------------------------------------------


class TestAddParticipation:
    @pytest.mark.asyncio
    async def test_adds_participant(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)
        user_id, blog_id = uuid4(), uuid4()

        result = await service.add_participation(challenge.id, user_id, blog_id)

        assert len(result.participants) == 1
        participant = result.participants[0]
        assert participant.user_id == user_id
        assert participant.blog_id == blog_id
        assert participant.submitted_at == NOW
        repository.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_same_user_twice(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)
        user_a, blog_x = uuid4(), uuid4()

        await service.add_participation(challenge.id, user_a, blog_x)
        with pytest.raises(AlreadyParticipatedError):
            await service.add_participation(challenge.id, user_a, blog_x)

        assert len(challenge.participants) == 1

    @pytest.mark.asyncio
    async def test_same_user_different_blog(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)
        user_a = uuid4()

        await service.add_participation(challenge.id, user_a, uuid4())
        with pytest.raises(AlreadyParticipatedError):
            await service.add_participation(challenge.id, user_a, uuid4())

    @pytest.mark.asyncio
    async def test_unique_violation_maps_to_already_participated(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        repository.flush.side_effect = DuplicateEntityError(
            "ChallengeParticipant", "uq_challenge_participant"
        )
        service = _make_service(repository, clock)

        with pytest.raises(AlreadyParticipatedError):
            await service.add_participation(challenge.id, uuid4(), uuid4())

    @pytest.mark.asyncio
    async def test_missing_user_or_blog(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        repository.flush.side_effect = ReferenceNotFoundError("ChallengeParticipant")
        service = _make_service(repository, clock)

        with pytest.raises(NotFoundError):
            await service.add_participation(challenge.id, uuid4(), uuid4())

    @pytest.mark.asyncio
    async def test_ended_challenge_rejects(self, repository, clock):
        challenge = _make_challenge(status="ended")
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeClosedError):
            await service.add_participation(challenge.id, uuid4(), uuid4())
        assert challenge.participants == []

    @pytest.mark.asyncio
    async def test_disabled_challenge_rejects(self, repository, clock):
        challenge = _make_challenge(is_active=False)
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeClosedError):
            await service.add_participation(challenge.id, uuid4(), uuid4())

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, repository, clock):
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeNotFoundError):
            await service.add_participation(uuid4(), uuid4(), uuid4())

    @pytest.mark.asyncio
    async def test_has_user_participated(self, repository, clock):
        participant = _make_participant()
        challenge = _make_challenge(participants=[participant])
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        assert await service.has_user_participated(challenge.id, participant.user_id) is True
        assert await service.has_user_participated(challenge.id, uuid4()) is False


# ---------------------------------------------------------------------------
# 4. end_challenge / end_yesterdays_challenges
# ---------------------------------------------------------------------------


class TestEndChallenge:
    @pytest.mark.asyncio
    async def test_active_to_ended(self, repository, clock):
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.end_challenge(challenge.id)

        assert result.status == "ended"
        repository.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_ended_is_noop(self, repository, clock):
        challenge = _make_challenge(status="ended")
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.end_challenge(challenge.id)

        assert result.status == "ended"
        repository.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, repository, clock):
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeNotFoundError):
            await service.end_challenge(uuid4())


class TestEndYesterdaysChallenges:
    @pytest.mark.asyncio
    async def test_nothing_for_yesterday(self, repository, clock):
        service = _make_service(repository, clock)

        results = await service.end_yesterdays_challenges()

        assert results == []
        repository.list_by_date_and_status.assert_awaited_once_with(YESTERDAY, "active")

    @pytest.mark.asyncio
    async def test_ends_active_challenges(self, repository, clock):
        challenge = _make_challenge(day=YESTERDAY, participants=[_make_participant()])
        repository.list_by_date_and_status.return_value = [challenge]
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        results = await service.end_yesterdays_challenges()

        assert len(results) == 1
        assert results[0].status == "ended"
        assert results[0].participants == 1
        assert challenge.status == "ended"

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, repository, clock):
        broken = _make_challenge(day=YESTERDAY)
        healthy = _make_challenge(day=YESTERDAY)
        repository.list_by_date_and_status.return_value = [broken, healthy]

        async def get_for_update(challenge_id):
            if challenge_id == broken.id:
                raise StoreUnavailableError("get_for_update")
            return healthy

        repository.get_for_update.side_effect = get_for_update
        service = _make_service(repository, clock)

        results = await service.end_yesterdays_challenges()

        assert [r.status for r in results] == ["failed", "ended"]
        assert "get_for_update" in results[0].error
        assert healthy.status == "ended"

    @pytest.mark.asyncio
    async def test_concurrently_ended_is_skipped(self, repository, clock):
        listed = _make_challenge(day=YESTERDAY)
        repository.list_by_date_and_status.return_value = [listed]
        locked = _make_challenge(day=YESTERDAY, status="ended")
        locked.id = listed.id
        _lock(repository, locked)
        service = _make_service(repository, clock)

        results = await service.end_yesterdays_challenges()

        assert results[0].status == "skipped"

    @pytest.mark.asyncio
    async def test_failed_outcome_does_not_reload_rolled_back_row(self, repository, clock):
        challenge = _make_challenge(day=YESTERDAY)
        row = _ExpiringRow(challenge)
        repository.list_by_date_and_status.return_value = [row]
        repository.get_for_update.side_effect = StoreUnavailableError("get_for_update")
        _expire_on_rollback(repository, row)
        service = _make_service(repository, clock)

        results = await service.end_yesterdays_challenges()

        assert row.expired
        assert results[0].status == "failed"
        assert results[0].challenge_id == challenge.id
        assert results[0].topic == challenge.topic


# ---------------------------------------------------------------------------
# 5. select_winner / select_winner_manually
# ---------------------------------------------------------------------------


class TestSelectWinner:
    @pytest.mark.asyncio
    async def test_most_likes_wins(self, repository, clock):
        a = _make_participant()
        c = _make_participant(minutes=10)
        challenge = _make_challenge(status="ended", participants=[a, c])
        _lock(repository, challenge)
        repository.get_blog_projections.return_value = {
            a.blog_id: _blog(a.blog_id, 3),
            c.blog_id: _blog(c.blog_id, 5),
        }
        service = _make_service(repository, clock)

        result = await service.select_winner(challenge.id, "likes")

        assert result.winner_user_id == c.user_id
        assert result.winner_blog_id == c.blog_id
        assert result.winner_score == 5
        assert result.winner_selection_method == "likes"
        assert result.winner_selected_at == NOW
        assert result.status == "winner_selected"

    @pytest.mark.asyncio
    async def test_tie_goes_to_earliest_submission(self, repository, clock):
        early = _make_participant()
        late = _make_participant(minutes=30)
        challenge = _make_challenge(status="ended", participants=[early, late])
        _lock(repository, challenge)
        repository.get_blog_projections.return_value = {
            early.blog_id: _blog(early.blog_id, 4),
            late.blog_id: _blog(late.blog_id, 4),
        }
        service = _make_service(repository, clock)

        result = await service.select_winner(challenge.id)

        assert result.winner_user_id == early.user_id

    @pytest.mark.asyncio
    async def test_missing_blog_counts_as_zero(self, repository, clock):
        deleted = _make_participant()
        kept = _make_participant(minutes=1)
        challenge = _make_challenge(status="ended", participants=[deleted, kept])
        _lock(repository, challenge)
        repository.get_blog_projections.return_value = {kept.blog_id: _blog(kept.blog_id, 1)}
        service = _make_service(repository, clock)

        with capture_logs() as logs:
            result = await service.select_winner(challenge.id)

        assert result.winner_user_id == kept.user_id
        warning = next(e for e in logs if e["event"] == "participant_blogs_missing")
        assert warning["blog_ids"] == [str(deleted.blog_id)]

    @pytest.mark.asyncio
    async def test_active_challenge_is_ended_first(self, repository, clock):
        participant = _make_participant()
        challenge = _make_challenge(status="active", participants=[participant])
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.select_winner(challenge.id)

        assert result.status == "winner_selected"
        assert result.winner_user_id == participant.user_id

    @pytest.mark.asyncio
    async def test_random(self, repository, clock):
        participants = [_make_participant(minutes=i) for i in range(4)]
        challenge = _make_challenge(status="ended", participants=participants)
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.select_winner(challenge.id, "random")

        assert result.winner_user_id in {p.user_id for p in participants}
        assert result.winner_selection_method == "random"
        assert result.winner_score is None
        repository.get_blog_projections.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_scoring(self, repository, clock):
        long_post = _make_participant()
        popular = _make_participant(minutes=1)
        challenge = _make_challenge(status="ended", participants=[long_post, popular])
        _lock(repository, challenge)
        repository.get_blog_projections.return_value = {
            long_post.blog_id: _blog(long_post.blog_id, likes=1, length=1500),
            popular.blog_id: _blog(popular.blog_id, likes=4, length=200),
        }
        service = _make_service(repository, clock)

        result = await service.select_winner(challenge.id, "ai_scoring")

        assert result.winner_user_id == long_post.user_id
        assert result.winner_score == pytest.approx(12.0)
        assert result.winner_selection_method == "ai_scoring"

    @pytest.mark.asyncio
    async def test_no_participants(self, repository, clock):
        challenge = _make_challenge(status="ended")
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(NoParticipantsError):
            await service.select_winner(challenge.id)
        assert challenge.status == "ended"

    @pytest.mark.asyncio
    async def test_already_decided(self, repository, clock):
        challenge = _make_decided_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(AlreadyDecidedError):
            await service.select_winner(challenge.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["votes", "manual", ""])
    async def test_invalid_method(self, repository, clock, method):
        challenge = _make_challenge(status="ended", participants=[_make_participant()])
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(InvalidSelectionMethodError):
            await service.select_winner(challenge.id, method)
        assert challenge.winner_user_id is None

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, repository, clock):
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeNotFoundError):
            await service.select_winner(uuid4())


class TestSelectWinnerManually:
    @pytest.mark.asyncio
    async def test_selects_given_participant(self, repository, clock):
        first, second = _make_participant(), _make_participant(minutes=1)
        challenge = _make_challenge(status="ended", participants=[first, second])
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        result = await service.select_winner_manually(
            challenge.id, second.user_id, second.blog_id
        )

        assert result.winner_user_id == second.user_id
        assert result.winner_selection_method == "manual"
        assert result.winner_score is None
        assert result.status == "winner_selected"

    @pytest.mark.asyncio
    async def test_pair_never_submitted(self, repository, clock):
        participant = _make_participant()
        challenge = _make_challenge(status="ended", participants=[participant])
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        with pytest.raises(ParticipantNotFoundError):
            await service.select_winner_manually(challenge.id, participant.user_id, uuid4())
        assert challenge.status == "ended"

    @pytest.mark.asyncio
    async def test_already_decided(self, repository, clock):
        challenge = _make_decided_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)
        participant = challenge.participants[0]

        with pytest.raises(AlreadyDecidedError):
            await service.select_winner_manually(
                challenge.id, participant.user_id, participant.blog_id
            )


class TestAutoSelectWinners:
    @pytest.mark.asyncio
    async def test_nothing_to_do(self, repository, clock):
        service = _make_service(repository, clock)

        assert await service.auto_select_winners() == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, repository, clock):
        empty = _make_challenge(day=YESTERDAY, status="ended")
        participant = _make_participant()
        ready = _make_challenge(day=YESTERDAY, status="ended", participants=[participant])
        repository.list_needing_winners.return_value = [empty, ready]
        _lock(repository, empty, ready)
        service = _make_service(repository, clock)

        results = await service.auto_select_winners()

        assert [r.status for r in results] == ["failed", "success"]
        assert results[0].error
        assert results[1].winner.user_id == participant.user_id
        assert results[1].winner.selection_method == "likes"
        assert ready.status == "winner_selected"
        assert empty.status == "ended"

    @pytest.mark.asyncio
    async def test_failed_outcome_does_not_reload_rolled_back_row(self, repository, clock):
        challenge = _make_challenge(day=YESTERDAY, status="ended")
        row = _ExpiringRow(challenge)
        repository.list_needing_winners.return_value = [row]
        repository.get_for_update.side_effect = StoreUnavailableError("get_for_update")
        _expire_on_rollback(repository, row)
        service = _make_service(repository, clock)

        results = await service.auto_select_winners()

        assert row.expired
        assert results[0].status == "failed"
        assert results[0].challenge_id == challenge.id
        assert results[0].topic == challenge.topic


# ---------------------------------------------------------------------------
# 6. Lifecycle invariants over random operation sequences
# ---------------------------------------------------------------------------

ORDER = {"active": 0, "ended": 1, "winner_selected": 2}


class TestLifecycleInvariants:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(20))
    async def test_random_operation_sequences(self, repository, clock, seed):
        rng = random.Random(seed)
        challenge = _make_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock, seed=seed)
        users = [uuid4() for _ in range(4)]

        previous = ORDER[challenge.status]
        for _ in range(15):
            op = rng.choice(["participate", "end", "likes", "random", "manual"])
            try:
                if op == "participate":
                    await service.add_participation(challenge.id, rng.choice(users), uuid4())
                elif op == "end":
                    await service.end_challenge(challenge.id)
                elif op == "manual":
                    if challenge.participants:
                        p = rng.choice(challenge.participants)
                        await service.select_winner_manually(challenge.id, p.user_id, p.blog_id)
                else:
                    await service.select_winner(challenge.id, op)
            except ChallengeServiceError:
                pass

            current = ORDER[challenge.status]
            assert current >= previous
            assert (challenge.winner_user_id is not None) == (
                challenge.status == "winner_selected"
            )
            user_ids = [p.user_id for p in challenge.participants]
            assert len(user_ids) == len(set(user_ids))
            previous = current


# ---------------------------------------------------------------------------
# 7. Read models
# ---------------------------------------------------------------------------


class TestChallengeSummary:
    @pytest.mark.asyncio
    async def test_summary(self, repository, clock):
        challenge = _make_decided_challenge()
        _lock(repository, challenge)
        service = _make_service(repository, clock)

        summary = await service.get_challenge_summary(challenge.id)

        assert summary.total_participants == 1
        assert summary.has_winner is True
        assert summary.winner.user_id == challenge.winner_user_id
        assert summary.status == "winner_selected"

    @pytest.mark.asyncio
    async def test_unknown(self, repository, clock):
        service = _make_service(repository, clock)

        with pytest.raises(ChallengeNotFoundError):
            await service.get_challenge_summary(uuid4())


class TestChallengeStats:
    @pytest.mark.asyncio
    async def test_stats(self, repository, clock):
        repository.count_challenges.side_effect = [3, 2]
        repository.count_participations.return_value = 11
        repository.count_by_provenance.return_value = {"AI": 2, "Fallback": 1}
        repository.get_by_date.return_value = _make_challenge()
        service = _make_service(repository, clock)

        stats = await service.get_challenge_stats()

        assert stats.total_challenges == 3
        assert stats.active_challenges == 2
        assert stats.todays_challenge is True
        assert stats.total_participations == 11
        assert stats.ai_generated_challenges == 2
        assert stats.fallback_challenges == 1
        assert stats.admin_challenges == 0
        assert stats.ai_success_rate == 67

    @pytest.mark.asyncio
    async def test_empty_store(self, repository, clock):
        service = _make_service(repository, clock)

        stats = await service.get_challenge_stats()

        assert stats.total_challenges == 0
        assert stats.todays_challenge is False
        assert stats.ai_success_rate == 0


class TestLeaderboard:
    def _tallies(self, count):
        return [
            ParticipationTally(
                user_id=uuid4(),
                username=f"writer{i}",
                completions=10 - i,
                last_participated_at=NOW - timedelta(days=i),
            )
            for i in range(count)
        ]

    @pytest.mark.asyncio
    async def test_ranks_and_badges(self, repository, clock):
        tallies = self._tallies(4)
        repository.participation_tallies.return_value = tallies
        repository.count_wins.return_value = {tallies[1].user_id: 2}
        service = _make_service(repository, clock)

        board = await service.get_leaderboard("all", 10)

        assert [e.rank for e in board] == [1, 2, 3, 4]
        assert [e.badge for e in board] == ["gold", "silver", "bronze", None]
        assert [e.completions for e in board] == [10, 9, 8, 7]
        assert board[1].wins == 2
        assert board[0].wins == 0
        repository.participation_tallies.assert_awaited_once_with(None, 10)

    @pytest.mark.asyncio
    async def test_week_window(self, repository, clock):
        service = _make_service(repository, clock)

        await service.get_leaderboard("week", 5)

        repository.participation_tallies.assert_awaited_once_with(NOW - timedelta(days=7), 5)

    @pytest.mark.asyncio
    async def test_month_window_is_calendar_month(self, repository, clock):
        service = _make_service(repository, clock)

        await service.get_leaderboard("month", 5)

        since = repository.participation_tallies.await_args.args[0]
        # 11:00 EST on Feb 10
        assert since == datetime(2026, 2, 10, 16, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_month_window_clamps_day(self, repository):
        clock = FixedClock(datetime(2026, 3, 31, 16, 0, tzinfo=timezone.utc))
        service = _make_service(repository, clock)

        await service.get_leaderboard("month", 5)

        since = repository.participation_tallies.await_args.args[0]
        assert since.date() == date(2026, 2, 28)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (1000, 100), (25, 25)])
    async def test_limit_clamped(self, repository, clock, limit, expected):
        service = _make_service(repository, clock)

        await service.get_leaderboard("all", limit)

        assert repository.participation_tallies.await_args.args[1] == expected

    @pytest.mark.asyncio
    async def test_invalid_timeframe(self, repository, clock):
        service = _make_service(repository, clock)

        with pytest.raises(InvalidTimeframeError):
            await service.get_leaderboard("decade")

    @pytest.mark.asyncio
    async def test_empty(self, repository, clock):
        service = _make_service(repository, clock)

        assert await service.get_leaderboard() == []


class TestChallengeWinners:
    @pytest.mark.asyncio
    async def test_winner_entries(self, repository, clock):
        challenge = _make_decided_challenge()
        repository.list_winners.return_value = [
            WinnerRow(challenge=challenge, username="writer", blog_title="My post")
        ]
        service = _make_service(repository, clock)

        winners = await service.get_challenge_winners("week", 3)

        assert len(winners) == 1
        assert winners[0].user_id == challenge.winner_user_id
        assert winners[0].username == "writer"
        assert winners[0].blog_title == "My post"
        assert winners[0].selection_method == "likes"
        repository.list_winners.assert_awaited_once_with(NOW - timedelta(days=7), 3)
