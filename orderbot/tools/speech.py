"""
Speech synthesis for VOICE blocks and order confirmation audio.

The synthesizer writes an mp3 under the media directory and returns the
public URL the channel adapter downloads it from.
"""

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from orderbot.errors import ExternalServiceError

logger = logging.getLogger(__name__)

MAX_SPEECH_CHARS = 4000

_HTML_TAG_RE = re.compile(r"</?[^>]+(>|$)")


def clean_for_speech(text: str) -> str:
    """Strip HTML tags and markdown emphasis, truncated to the API limit."""
    cleaned = _HTML_TAG_RE.sub("", text).replace("**", "").replace("*", "")
    return cleaned.strip()[:MAX_SPEECH_CHARS]


@runtime_checkable
class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> str:
        """Synthesize ``text`` and return the asset URL."""
        ...


class OpenAISpeechSynthesizer:
    """OpenAI text-to-speech writing mp3 files to a local media directory."""

    def __init__(
        self,
        api_key: str,
        media_dir: str,
        url_prefix: str = "/api/media",
        model: str = "tts-1",
        voice: str = "ash",
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._media_dir = Path(media_dir)
        self._url_prefix = url_prefix.rstrip("/")
        self._model = model
        self._voice = voice

    async def synthesize(self, text: str) -> str:
        cleaned = clean_for_speech(text)
        if not cleaned:
            raise ExternalServiceError("speech", "nothing to synthesize")

        try:
            response = await self._client.audio.speech.create(
                model=self._model,
                voice=self._voice,
                input=cleaned,
            )
        except (APIConnectionError, RateLimitError, APIStatusError) as e:
            raise ExternalServiceError("speech", str(e)) from e

        audio = response.content
        if not audio:
            raise ExternalServiceError("speech", "empty audio")

        filename = f"audio_{uuid.uuid4().hex}.mp3"
        await asyncio.to_thread(self._write, filename, audio)
        logger.info("Synthesized %d chars to %s (%d bytes)", len(cleaned), filename, len(audio))
        return f"{self._url_prefix}/{filename}"

    def _write(self, filename: str, data: bytes) -> None:
        self._media_dir.mkdir(parents=True, exist_ok=True)
        (self._media_dir / filename).write_bytes(data)
