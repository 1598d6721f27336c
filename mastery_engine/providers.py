"""Content provider interface and the OpenAI-backed implementation."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import openai
from openai import AsyncOpenAI


logger = logging.getLogger(__name__)


class ProviderUnavailable(RuntimeError):
    """Raised when the content provider cannot be reached or returns nothing."""


class ContentProvider(ABC):
    """Language-model backend that answers a prompt with a JSON object string."""

    @abstractmethod
    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 900,
        model: Optional[str] = None,
    ) -> str:
        """Return the raw JSON text produced for the prompt."""


class OpenAIContentProvider(ContentProvider):
    """Chat-completions provider constrained to JSON object responses."""

    def __init__(self, model: str = "gpt-4.1", client: Optional[AsyncOpenAI] = None) -> None:
        self._model = model
        self._client = client or AsyncOpenAI()

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 900,
        model: Optional[str] = None,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model or self._model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as exc:
            logger.warning("Content provider request failed: %s", exc)
            raise ProviderUnavailable(str(exc)) from exc

        if not response.choices:
            raise ProviderUnavailable("Content provider returned no choices")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ProviderUnavailable("Content provider returned an empty message")
        return content.strip()


__all__ = ["ContentProvider", "OpenAIContentProvider", "ProviderUnavailable"]
