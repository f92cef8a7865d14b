"""SQLAlchemy ORM models for daily challenges and their read projections."""

import datetime as dt
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    ForeignKey,
    Identity,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import DOUBLE_PRECISION, Boolean, DateTime


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Users and blogs (owned by the blogging core, read here for scoring/display)
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    username: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )


class Blog(Base):
    __tablename__ = "blogs"
    __table_args__ = (Index("idx_blogs_author", "author_id"),)

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )


class BlogLike(Base):
    __tablename__ = "blog_likes"
    __table_args__ = (
        UniqueConstraint("blog_id", "user_id", name="uq_blog_like"),
        Index("idx_blog_likes_blog", "blog_id"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    blog_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("blogs.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class Challenge(Base):
    __tablename__ = "challenges"
    __table_args__ = (
        UniqueConstraint("date", name="uq_challenge_date"),
        Index("idx_challenges_status", "status"),
        Index("idx_challenges_active", "is_active"),
        CheckConstraint(
            "category IN ('Technology','Lifestyle','Health','Science','Art',"
            "'Business','Education','Environment','Travel','Food','Sports',"
            "'Politics','Entertainment')",
            name="ck_challenge_category",
        ),
        CheckConstraint(
            "difficulty IN ('Easy','Medium','Hard')",
            name="ck_challenge_difficulty",
        ),
        CheckConstraint(
            "created_by IN ('AI','Admin','Fallback')",
            name="ck_challenge_created_by",
        ),
        CheckConstraint(
            "status IN ('active','ended','winner_selected')",
            name="ck_challenge_status",
        ),
        CheckConstraint(
            "winner_selection_method IS NULL OR winner_selection_method IN "
            "('likes','random','manual','ai_scoring')",
            name="ck_challenge_selection_method",
        ),
        CheckConstraint(
            "(status = 'winner_selected') = (winner_user_id IS NOT NULL)",
            name="ck_challenge_winner_status",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    topic: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    difficulty: Mapped[str] = mapped_column(
        Text, nullable=False, default="Medium", server_default=text("'Medium'")
    )
    tags: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_by: Mapped[str] = mapped_column(
        Text, nullable=False, default="AI", server_default=text("'AI'")
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="active", server_default=text("'active'")
    )

    # Embedded winner record
    winner_user_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id")
    )
    winner_blog_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("blogs.id")
    )
    winner_selected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    winner_selection_method: Mapped[str | None] = mapped_column(Text)
    winner_score: Mapped[float | None] = mapped_column(DOUBLE_PRECISION)

    # promptUsed / generatedAt / aiModel / isAIGenerated
    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )

    participants: Mapped[list["ChallengeParticipant"]] = relationship(
        back_populates="challenge",
        order_by="ChallengeParticipant.sequence",
        lazy="selectin",
        cascade="save-update, merge",
    )

    @property
    def has_winner(self) -> bool:
        return self.winner_user_id is not None

    def has_user_participated(self, user_id: UUID) -> bool:
        return any(p.user_id == user_id for p in self.participants)

    def find_participant(
        self, user_id: UUID, blog_id: UUID
    ) -> "ChallengeParticipant | None":
        for participant in self.participants:
            if participant.user_id == user_id and participant.blog_id == blog_id:
                return participant
        return None


class ChallengeParticipant(Base):
    """One user's submission to a challenge; rows are never updated or deleted."""

    __tablename__ = "challenge_participants"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),
        Index("idx_participants_challenge", "challenge_id"),
        Index("idx_participants_user_submitted", "user_id", "submitted_at"),
    )

    # Identity order is submission order
    sequence: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    challenge_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    blog_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("blogs.id", ondelete="CASCADE"),
        nullable=False,
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )

    challenge: Mapped["Challenge"] = relationship(back_populates="participants")
