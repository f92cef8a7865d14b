"""Enumerations shared by the challenge models, generator and service."""

import enum

CATEGORIES: tuple[str, ...] = (
    "Technology",
    "Lifestyle",
    "Health",
    "Science",
    "Art",
    "Business",
    "Education",
    "Environment",
    "Travel",
    "Food",
    "Sports",
    "Politics",
    "Entertainment",
)

DIFFICULTIES: tuple[str, ...] = ("Easy", "Medium", "Hard")


class ChallengeStatus(str, enum.Enum):
    active = "active"
    ended = "ended"
    winner_selected = "winner_selected"


class Provenance(str, enum.Enum):
    """Where a challenge's content came from."""

    ai = "AI"
    admin = "Admin"
    fallback = "Fallback"


class SelectionMethod(str, enum.Enum):
    likes = "likes"
    random = "random"
    manual = "manual"
    ai_scoring = "ai_scoring"


class Timeframe(str, enum.Enum):
    week = "week"
    month = "month"
    all = "all"
