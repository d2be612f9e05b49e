"""
Text completion service backed by the OpenAI chat completions API.

The engine treats the model as a black box that maps chat messages to one
reply string. Library errors are wrapped in ``ExternalServiceError`` so the
orchestrator can degrade to an apology without knowing the provider.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from orderbot.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@runtime_checkable
class CompletionService(Protocol):
    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the model reply for a list of chat messages."""
        ...


class OpenAICompletionService:
    """Chat completions with fixed model settings."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4-turbo",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def complete(self, messages: list[dict[str, str]]) -> str:
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except (APIConnectionError, RateLimitError, APIStatusError) as e:
            raise ExternalServiceError("llm", str(e)) from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise ExternalServiceError("llm", "empty completion")
        logger.debug("Completion received (%d chars)", len(content))
        return content
