"""Generative text capability used by the challenge generator.

The generator only depends on :class:`TextGenerator`; the Gemini client is
the production implementation and tests pass their own stub.
"""

from typing import Protocol

import httpx

from daily_challenge.config import ChallengeSettings, get_settings
from daily_challenge.logging_config import get_logger

logger = get_logger(__name__)


class TextGenerationError(Exception):
    """Raised when the generative service cannot produce text."""


class TextGenerator(Protocol):
    model: str | None

    @property
    def is_configured(self) -> bool: ...

    async def generate(self, prompt: str) -> str: ...


class GeminiTextGenerator:
    """Client for the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        settings: ChallengeSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.model = settings.gemini_model
        self._api_key = settings.gemini_api_key
        self._base_url = settings.gemini_base_url.rstrip("/")
        self._timeout = settings.generation_timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def generate(self, prompt: str) -> str:
        if not self.is_configured:
            raise TextGenerationError("no Gemini API key configured")

        client = await self._get_client()
        url = f"{self._base_url}/models/{self.model}:generateContent"
        try:
            response = await client.post(
                url,
                headers={"x-goog-api-key": self._api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TextGenerationError(
                f"Gemini returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TextGenerationError(f"Gemini request failed: {type(e).__name__}") from e

        return self._extract_text(response.json())

    @staticmethod
    def _extract_text(payload: dict) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            raise TextGenerationError("Gemini response has no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text.strip():
            raise TextGenerationError("Gemini response has no text")
        return text

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
