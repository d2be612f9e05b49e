"""
Turns a parsed model reply into a delivery-ready outbound response.

TEXT is passed through. VOICE is synthesized, except while the order is
being confirmed or is committed: then it is never spoken, and becomes the
text when no TEXT block exists. IMAGE blocks are resolved in order through
the catalog; a failure on one image never stops the others. The first
image gets a state-appropriate follow-up question.

Usage:
    resolver = ResponseResolver(image_resolver, synthesizer)
    response = await resolver.resolve(parsed, state=conversation.state)
"""

import asyncio
import logging
from typing import Optional

from orderbot.conversation.state_machine import OrderState
from orderbot.conversation.tagged_response import ParsedResponse
from orderbot.errors import ExternalServiceError
from orderbot.prompts.prompt_templates import image_follow_up, image_question_suffix
from orderbot.prompts.system_prompts import IMAGE_ERROR_REPLY, IMAGE_NOT_FOUND_REPLY
from orderbot.schemas.catalog_schema import BotConfiguration
from orderbot.schemas.message_schema import ImageAttachment, OutboundResponse
from orderbot.tools.catalog import CatalogImageResolver, ResolvedImage
from orderbot.tools.speech import SpeechSynthesizer

logger = logging.getLogger(__name__)

VOICE_SUPPRESSED_STATES = frozenset({OrderState.ORDER_CONFIRMATION, OrderState.ORDER_COMMITTED})


class ResponseResolver:
    """Resolves TEXT, VOICE and IMAGE blocks for one turn."""

    def __init__(
        self,
        images: CatalogImageResolver,
        speech: SpeechSynthesizer,
        timeout: float = 30.0,
    ) -> None:
        self._images = images
        self._speech = speech
        self._timeout = timeout

    async def resolve(
        self,
        parsed: ParsedResponse,
        state: int,
        bot_config: Optional[BotConfiguration] = None,
    ) -> OutboundResponse:
        text = parsed.text.strip() if parsed.text else None
        voice_ref = None

        if parsed.voice_text:
            if state in VOICE_SUPPRESSED_STATES:
                logger.info("Voice block suppressed in state %d", state)
                if text is None:
                    text = parsed.voice_text
            else:
                voice_ref = await self.synthesize(parsed.voice_text)
                if voice_ref is None and text is None:
                    text = parsed.voice_text

        attachments, text = await self._resolve_images(parsed.image_ids, state, text, bot_config)

        return OutboundResponse(
            success=True,
            text=text,
            voice_asset_ref=voice_ref,
            image_asset_ref=attachments[0].url if attachments else None,
            image_caption=attachments[0].caption if attachments else None,
            all_images=attachments,
            state=state,
        )

    async def synthesize(self, text: str) -> Optional[str]:
        """Speech asset for ``text``, or None when synthesis fails."""
        try:
            return await asyncio.wait_for(self._speech.synthesize(text), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Speech synthesis timed out after %.0fs", self._timeout)
        except ExternalServiceError as e:
            logger.error("Speech synthesis failed: %s", e, exc_info=True)
        return None

    async def _resolve_images(
        self,
        image_ids: tuple[str, ...],
        state: int,
        text: Optional[str],
        bot_config: Optional[BotConfiguration],
    ) -> tuple[list[ImageAttachment], Optional[str]]:
        attachments: list[ImageAttachment] = []
        notices: list[str] = []
        seen_urls: set[str] = set()
        first: Optional[ResolvedImage] = None

        for image_id in image_ids:
            try:
                resolved = await self._images.resolve(image_id, bot_config)
            except Exception:
                logger.error("Image resolution failed for '%s'", image_id, exc_info=True)
                if IMAGE_ERROR_REPLY not in notices:
                    notices.append(IMAGE_ERROR_REPLY)
                continue

            if resolved is None:
                if IMAGE_NOT_FOUND_REPLY not in notices:
                    notices.append(IMAGE_NOT_FOUND_REPLY)
                continue
            if resolved.url in seen_urls:
                logger.debug("Skipping duplicate image %s", resolved.id)
                continue

            seen_urls.add(resolved.url)
            attachments.append(ImageAttachment(id=resolved.id, url=resolved.url, caption=resolved.caption))
            if first is None:
                first = resolved

        if first is not None:
            text = self._with_follow_up(text, first, state)
        if notices:
            text = "\n\n".join([text, *notices]) if text else "\n\n".join(notices)
        return attachments, text

    @staticmethod
    def _with_follow_up(text: Optional[str], image: ResolvedImage, state: int) -> str:
        if not text:
            return image_follow_up(state, image.caption, image.is_menu, image.is_dessert)
        if text.rstrip().endswith("?"):
            return text
        suffix = image_question_suffix(state, image.is_menu, image.is_dessert)
        return f"{text}\n\n{suffix}" if suffix else text
