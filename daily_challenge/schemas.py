"""Pydantic v2 schemas for challenge content, responses and read models."""

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from daily_challenge.constants import CATEGORIES, DIFFICULTIES


# ---------------------------------------------------------------------------
# Generator output
# ---------------------------------------------------------------------------


class GenerationMetadata(BaseModel):
    prompt_used: str | None = None
    generated_at: datetime | None = None
    ai_model: str | None = None
    is_ai_generated: bool = False


class GeneratedText(BaseModel):
    """Shape the generative service is asked to return."""

    topic: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)

    @field_validator("topic", "description")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return [tag.strip() for tag in value if tag and tag.strip()]


class ChallengeContent(BaseModel):
    topic: str
    category: str
    description: str
    difficulty: str
    tags: list[str] = Field(default_factory=list)
    metadata: GenerationMetadata = Field(default_factory=GenerationMetadata)

    @property
    def is_ai_generated(self) -> bool:
        return self.metadata.is_ai_generated


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateChallengeRequest(BaseModel):
    """Admin-authored challenge for a given day."""

    topic: str = Field(..., min_length=1, max_length=200)
    category: str
    description: str = Field(..., min_length=1)
    date: date
    difficulty: str = "Medium"
    tags: list[str] = Field(default_factory=list)

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str) -> str:
        if value not in CATEGORIES:
            raise ValueError(f"category must be one of {list(CATEGORIES)}")
        return value

    @field_validator("difficulty")
    @classmethod
    def _known_difficulty(cls, value: str) -> str:
        if value not in DIFFICULTIES:
            raise ValueError(f"difficulty must be one of {list(DIFFICULTIES)}")
        return value


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    blog_id: UUID
    submitted_at: datetime | None


class WinnerResponse(BaseModel):
    user_id: UUID
    blog_id: UUID
    selected_at: datetime | None
    selection_method: str
    score: float | None = None


class ChallengeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    topic: str
    category: str
    description: str
    date: date
    difficulty: str
    tags: list[str]
    is_active: bool
    created_by: str
    status: str
    participants: list[ParticipantResponse] = Field(default_factory=list)
    winner: WinnerResponse | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_challenge(cls, challenge) -> "ChallengeResponse":
        winner = None
        if challenge.winner_user_id is not None:
            winner = WinnerResponse(
                user_id=challenge.winner_user_id,
                blog_id=challenge.winner_blog_id,
                selected_at=challenge.winner_selected_at,
                selection_method=challenge.winner_selection_method,
                score=challenge.winner_score,
            )
        return cls(
            id=challenge.id,
            topic=challenge.topic,
            category=challenge.category,
            description=challenge.description,
            date=challenge.date,
            difficulty=challenge.difficulty,
            tags=list(challenge.tags or []),
            is_active=challenge.is_active,
            created_by=challenge.created_by,
            status=challenge.status,
            participants=[
                ParticipantResponse.model_validate(p) for p in challenge.participants
            ],
            winner=winner,
            metadata=dict(challenge.metadata_ or {}),
            created_at=challenge.created_at,
        )


class BatchOutcome(BaseModel):
    """Per-challenge result of a batch job."""

    challenge_id: UUID
    topic: str
    status: Literal["ended", "skipped", "success", "failed"]
    participants: int | None = None
    winner: WinnerResponse | None = None
    error: str | None = None


class ChallengeSummary(BaseModel):
    challenge_id: UUID
    total_participants: int
    has_winner: bool
    winner: WinnerResponse | None = None
    status: str


class ChallengeStatsResponse(BaseModel):
    total_challenges: int
    active_challenges: int
    todays_challenge: bool
    total_participations: int
    ai_generated_challenges: int
    fallback_challenges: int
    admin_challenges: int
    ai_success_rate: int = Field(..., description="Percentage of challenges written by the AI")


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: UUID
    username: str | None
    completions: int
    wins: int = 0
    last_participated_at: datetime | None
    badge: str | None = None


class WinnerEntry(BaseModel):
    challenge_id: UUID
    topic: str
    date: date
    user_id: UUID
    username: str | None
    blog_id: UUID
    blog_title: str | None
    selected_at: datetime | None
    selection_method: str
    score: float | None = None


class AIStatusResponse(BaseModel):
    has_api_key: bool
    is_working: bool
    model: str | None
    test_response: str | None = None
    error: str | None = None
