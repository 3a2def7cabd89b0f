from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from openai import AsyncOpenAI

from services.errors import EmptyModelResponse
from settings.config import Settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a document parser specialized in bank statement data extraction. "
    "Return ONLY valid JSON with no additional text, explanations, or code blocks."
)

DEFAULT_OPTIONS: Dict[str, Any] = {
    "temperature": 0.1,
    "top_p": 0.95,
}


class StructuringClient(Protocol):
    async def generate(self, model_id: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        ...


class OpenAIStructuringClient:
    """Structures statement text through the chat completions API."""

    def __init__(self, client: AsyncOpenAI, max_output_tokens: int = 16384) -> None:
        self._client = client
        self.max_output_tokens = max_output_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIStructuringClient":
        if not settings.OPENAI_API_KEY:
            logger.error("OPENAI_API_KEY is not configured; structuring calls will fail")
        client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY or "missing", base_url=settings.OPENAI_BASE_URL)
        return cls(client, max_output_tokens=settings.STRUCTURING_MAX_OUTPUT_TOKENS)

    async def generate(self, model_id: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        params = {**DEFAULT_OPTIONS, "max_tokens": self.max_output_tokens, **(options or {})}
        resp = await self._client.chat.completions.create(
            model=model_id,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            **params,
        )
        content = resp.choices[0].message.content if resp.choices else None
        if not content or not content.strip():
            raise EmptyModelResponse(f"Model {model_id} returned an empty response")
        logger.info(f"Model {model_id} responded with {len(content)} characters")
        return content

    async def close(self) -> None:
        await self._client.close()
