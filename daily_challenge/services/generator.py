"""ChallengeGenerator: topic, description and tags for a day's challenge.

Content comes from the generative text service when it is configured and
answers with the JSON shape we ask for. Anything else (no key, transport
error, timeout, prose instead of JSON, missing fields) falls through to the
static table below, and that path never raises.
"""

from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from daily_challenge.constants import CATEGORIES, DIFFICULTIES
from daily_challenge.exceptions import GenerationFailedError, InvalidCategoryError
from daily_challenge.logging_config import get_logger
from daily_challenge.schemas import (
    AIStatusResponse,
    ChallengeContent,
    GeneratedText,
    GenerationMetadata,
)
from daily_challenge.services.text_generation import TextGenerator

logger = get_logger(__name__)

PROMPT_TEMPLATE = """Generate a unique and engaging daily blog writing challenge for the category "{category}" with "{difficulty}" difficulty level.

Requirements:
- Provide a compelling topic title (max 100 characters)
- Write a detailed description that inspires creativity (150-300 words)
- Include 3-5 relevant tags
- Make it thought-provoking and relevant to current trends
- Ensure it's appropriate for all audiences

Return the response in this exact JSON format:
{{
    "topic": "Your topic title here",
    "description": "Your detailed description here",
    "tags": ["tag1", "tag2", "tag3"]
}}"""

STATUS_CHECK_PROMPT = 'Say "Hello" in JSON format: {"message": "Hello"}'

FALLBACK_CHALLENGES: list[dict[str, Any]] = [
    {
        "topic": "The Future of Digital Communication",
        "category": "Technology",
        "description": (
            "Explore how digital communication has evolved and predict where it "
            "might go next. Consider the impact of AI, VR, and emerging "
            "technologies on how we connect with each other."
        ),
        "difficulty": "Medium",
        "tags": ["future", "communication", "technology", "AI", "social-media"],
    },
    {
        "topic": "The Art of Mindful Productivity",
        "category": "Lifestyle",
        "description": (
            "Discuss the balance between being productive and maintaining mental "
            "well-being. Explore techniques that help people achieve their goals "
            "without burning out."
        ),
        "difficulty": "Medium",
        "tags": ["productivity", "mindfulness", "wellness", "work-life-balance"],
    },
    {
        "topic": "Small Habits, Lasting Health",
        "category": "Health",
        "description": (
            "Pick one small daily habit, such as a walk after lunch or a fixed "
            "bedtime, and write about what the research says it does for the body "
            "and mind. Share how someone could start it tomorrow and keep it up."
        ),
        "difficulty": "Easy",
        "tags": ["habits", "health", "sleep", "exercise"],
    },
    {
        "topic": "The Science Behind Everyday Phenomena",
        "category": "Science",
        "description": (
            "Choose an everyday occurrence and explain the fascinating science "
            "behind it. Make complex concepts accessible and engaging for general "
            "readers."
        ),
        "difficulty": "Hard",
        "tags": ["science", "education", "physics", "biology", "chemistry"],
    },
    {
        "topic": "A Painting That Changed How You See",
        "category": "Art",
        "description": (
            "Write about a single artwork that shifted your perspective. Describe "
            "what you noticed first, what you only saw later, and what the artist "
            "might have wanted viewers to take away."
        ),
        "difficulty": "Medium",
        "tags": ["art", "painting", "perspective", "culture"],
    },
    {
        "topic": "Lessons From a Business That Failed",
        "category": "Business",
        "description": (
            "Choose a company or product that did not make it and unpack why. "
            "Look at timing, customers, competition and decisions, and end with "
            "what a founder today could learn from it."
        ),
        "difficulty": "Hard",
        "tags": ["business", "startups", "strategy", "lessons"],
    },
    {
        "topic": "The Lesson That Finally Clicked",
        "category": "Education",
        "description": (
            "Recall a moment when a difficult idea finally made sense because of "
            "how someone taught it. Describe the method and argue how it could be "
            "used more widely in classrooms or online courses."
        ),
        "difficulty": "Easy",
        "tags": ["education", "learning", "teaching", "memories"],
    },
    {
        "topic": "Sustainable Living in Urban Environments",
        "category": "Environment",
        "description": (
            "Write about practical ways people can live more sustainably in "
            "cities. Include tips, challenges, and innovative solutions that urban "
            "dwellers can implement in their daily lives."
        ),
        "difficulty": "Easy",
        "tags": ["sustainability", "urban-living", "environment", "green-living", "climate"],
    },
    {
        "topic": "A Place Worth the Long Way Around",
        "category": "Travel",
        "description": (
            "Describe a destination that took real effort to reach. Cover the "
            "journey as much as the arrival, and give readers the practical "
            "details they would need to make the trip themselves."
        ),
        "difficulty": "Medium",
        "tags": ["travel", "adventure", "journey", "guides"],
    },
    {
        "topic": "Culinary Adventures Around the World",
        "category": "Food",
        "description": (
            "Take readers on a virtual food journey. Describe a cuisine you've "
            "never tried or want to explore, including its history, key "
            "ingredients, and cultural significance."
        ),
        "difficulty": "Easy",
        "tags": ["food", "culture", "travel", "cuisine", "cooking"],
    },
    {
        "topic": "The Underdog Season",
        "category": "Sports",
        "description": (
            "Tell the story of a team or athlete that won against the odds. "
            "Explain what changed, which moments decided it, and what the rest "
            "of us can borrow from how they prepared."
        ),
        "difficulty": "Medium",
        "tags": ["sports", "underdog", "teamwork", "motivation"],
    },
    {
        "topic": "One Local Decision That Shaped Your Town",
        "category": "Politics",
        "description": (
            "Pick a decision made by a city council, school board or similar body "
            "and trace its effects on everyday life. Present the arguments on "
            "each side fairly before giving your own view."
        ),
        "difficulty": "Hard",
        "tags": ["politics", "local-government", "community", "civics"],
    },
    {
        "topic": "The Story You Keep Rewatching",
        "category": "Entertainment",
        "description": (
            "Write about a film, show or game you return to again and again. "
            "Explain what keeps pulling you back and what it reveals about the "
            "stories we find comforting."
        ),
        "difficulty": "Easy",
        "tags": ["entertainment", "movies", "storytelling", "nostalgia"],
    },
]


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first top-level JSON object embedded in ``text``.

    Replies often wrap the object in markdown fences or a sentence of prose;
    decoding starts at each ``{`` in turn until one parses.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def build_prompt(category: str, difficulty: str) -> str:
    return PROMPT_TEMPLATE.format(category=category, difficulty=difficulty)


class ChallengeGenerator:
    """Produces challenge content; performs no persistence."""

    def __init__(
        self,
        text_generator: TextGenerator | None,
        timeout_seconds: float = 15.0,
        rng: random.Random | None = None,
        fallback_table: list[dict[str, Any]] | None = None,
    ) -> None:
        self.text_generator = text_generator
        self.timeout_seconds = timeout_seconds
        self.rng = rng or random.Random()
        self.fallback_table = fallback_table or FALLBACK_CHALLENGES

    @property
    def model(self) -> str | None:
        return getattr(self.text_generator, "model", None)

    def random_category(self) -> str:
        return self.rng.choice(CATEGORIES)

    def random_difficulty(self) -> str:
        return self.rng.choice(DIFFICULTIES)

    async def generate_daily_challenge(self, category: str | None = None) -> ChallengeContent:
        """Generate content for ``category`` (random when omitted)."""
        if category is not None and category not in CATEGORIES:
            raise InvalidCategoryError(category)

        category = category or self.random_category()
        difficulty = self.random_difficulty()
        prompt = build_prompt(category, difficulty)

        logger.info("challenge_generation_started", category=category, difficulty=difficulty)
        try:
            generated = await self._generate(prompt)
        except GenerationFailedError as e:
            logger.warning(
                "challenge_generation_failed",
                category=category,
                reason=e.reason,
            )
            return self.fallback_challenge(category, prompt=prompt)

        logger.info("challenge_generated", category=category, topic=generated.topic)
        return ChallengeContent(
            topic=generated.topic,
            category=category,
            description=generated.description,
            difficulty=difficulty,
            tags=generated.tags,
            metadata=GenerationMetadata(
                prompt_used=prompt,
                generated_at=datetime.now(timezone.utc),
                ai_model=self.model,
                is_ai_generated=True,
            ),
        )

    async def _generate(self, prompt: str) -> GeneratedText:
        if self.text_generator is None or not self.text_generator.is_configured:
            raise GenerationFailedError("generative text service not configured")

        try:
            text = await asyncio.wait_for(
                self.text_generator.generate(prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GenerationFailedError(
                f"no response within {self.timeout_seconds:g}s"
            ) from e
        except Exception as e:
            raise GenerationFailedError(f"{type(e).__name__}: {e}") from e

        payload = extract_json_object(text)
        if payload is None:
            raise GenerationFailedError("no JSON object in response")
        try:
            return GeneratedText.model_validate(payload)
        except ValidationError as e:
            raise GenerationFailedError(
                f"unexpected JSON shape ({e.error_count()} errors)"
            ) from e

    def fallback_challenge(
        self, category: str | None = None, prompt: str | None = None
    ) -> ChallengeContent:
        """Pick from the static table: the category's entry, else any entry."""
        entry = None
        if category:
            entry = next(
                (c for c in self.fallback_table if c["category"] == category), None
            )
        if entry is None:
            entry = self.rng.choice(self.fallback_table)

        return ChallengeContent(
            topic=entry["topic"],
            category=entry["category"],
            description=entry["description"],
            difficulty=entry["difficulty"],
            tags=list(entry["tags"]),
            metadata=GenerationMetadata(
                prompt_used=prompt,
                generated_at=datetime.now(timezone.utc),
                ai_model=None,
                is_ai_generated=False,
            ),
        )

    async def check_ai_status(self) -> AIStatusResponse:
        """Send a tiny prompt and report whether the service answered. Never raises."""
        if self.text_generator is None or not self.text_generator.is_configured:
            return AIStatusResponse(
                has_api_key=False,
                is_working=False,
                model=self.model,
                error="No API key found",
            )

        try:
            text = await asyncio.wait_for(
                self.text_generator.generate(STATUS_CHECK_PROMPT),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            logger.warning("ai_status_check_failed", error_type=type(e).__name__)
            return AIStatusResponse(
                has_api_key=True,
                is_working=False,
                model=self.model,
                error=str(e) or type(e).__name__,
            )

        return AIStatusResponse(
            has_api_key=True,
            is_working="Hello" in text,
            model=self.model,
            test_response=text[:100],
        )
