"""
Turn intercepts that run before the language model is consulted.

Each guardrail inspects the inbound message and the conversation and either
passes or returns a result describing the intercept. Guardrails only decide;
the orchestrator performs the side effects (new conversation, state change,
speech synthesis, image resolution).

1. ResetGuardrail             - reset vocabulary starts a new conversation
2. MediaGuardrail             - unsupported media kinds get a canned reply
3. AddressNumberGuardrail     - bare house number spliced into the known street
4. PaymentGuardrail           - payment options prompt, card type clarification
5. ConfirmationAudioGuardrail - spoken order confirmation on request
6. ImageRequestGuardrail      - direct requests to see the menu or a flavor

These are composed into a GuardrailPipeline evaluated in that order.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

from orderbot.conversation import detectors
from orderbot.conversation.state_machine import OrderState
from orderbot.prompts.prompt_templates import build_address_registered_reply
from orderbot.prompts.system_prompts import CARD_TYPE_REPLY, PAYMENT_OPTIONS_REPLY
from orderbot.schemas.catalog_schema import MenuItem
from orderbot.schemas.conversation_schema import Conversation
from orderbot.schemas.message_schema import InboundMessage
from orderbot.utils import has_digit

logger = logging.getLogger(__name__)

RESET = "reset"
UNSUPPORTED_MEDIA = "unsupported_media"
HOUSE_NUMBER = "house_number"
PAYMENT_PROMPT = "payment_prompt"
CARD_TYPE = "card_type"
AUDIO_CONFIRMATION = "audio_confirmation"
IMAGE_REQUEST = "image_request"


@dataclass
class GuardrailResult:
    """Outcome of a single guardrail check."""
    passed: bool
    violation_type: Optional[str] = None
    message: Optional[str] = None
    reply: Optional[str] = None
    address: Optional[str] = None
    image_ids: list[str] = field(default_factory=list)


PASSED = GuardrailResult(passed=True)


class ResetGuardrail:
    """Whole-message reset commands, honored in every state."""

    def check(self, text: str) -> GuardrailResult:
        if detectors.is_reset_request(text):
            return GuardrailResult(
                passed=False,
                violation_type=RESET,
                message="Customer asked to start over.",
            )
        return PASSED


class MediaGuardrail:
    """Routes image, video, sticker and document messages to a canned reply."""

    def __init__(self, unsupported_reply: str) -> None:
        self.unsupported_reply = unsupported_reply

    def check(self, message: InboundMessage) -> GuardrailResult:
        if message.is_supported_media:
            return PASSED
        return GuardrailResult(
            passed=False,
            violation_type=UNSUPPORTED_MEDIA,
            message=f"Unsupported media kind '{message.media_kind}'.",
            reply=self.unsupported_reply,
        )


def splice_address(conversation: Conversation, number: str) -> Optional[str]:
    """
    Complete the known address with ``number``.

    Prefers the street resolved from a postal code; falls back to the draft
    order address that was rejected for lacking a number.
    """
    resolved = conversation.address_data
    if resolved is not None and resolved.components.street:
        street = resolved.components.street
        formatted = resolved.formatted_address
        if street in formatted:
            return formatted.replace(street, f"{street}, {number}", 1)
        return f"{street}, {number}"
    draft = conversation.draft_order
    if draft is not None and draft.address.strip() and not has_digit(draft.address):
        return f"{draft.address.strip()}, {number}"
    return None


class AddressNumberGuardrail:
    """A digits-only message in DELIVERY_ADDRESS is the missing house number."""

    def check(self, conversation: Conversation, text: str) -> GuardrailResult:
        if conversation.state != OrderState.DELIVERY_ADDRESS:
            return PASSED
        number = detectors.number_only(text)
        if number is None:
            return PASSED
        address = splice_address(conversation, number)
        if address is None:
            logger.debug("House number %s received with no street to attach it to", number)
            return PASSED
        return GuardrailResult(
            passed=False,
            violation_type=HOUSE_NUMBER,
            message=f"House number {number} completes the address.",
            reply=build_address_registered_reply(address, PAYMENT_OPTIONS_REPLY),
            address=address,
        )


class PaymentGuardrail:
    """Keeps change-giving out of the conversation until a method is chosen."""

    def check(self, conversation: Conversation, text: str) -> GuardrailResult:
        if conversation.state != OrderState.PAYMENT_METHOD:
            return PASSED
        if not conversation.payment_prompted:
            return GuardrailResult(
                passed=False,
                violation_type=PAYMENT_PROMPT,
                message="First message in payment state.",
                reply=PAYMENT_OPTIONS_REPLY,
            )
        if detectors.mentions_card_without_type(text):
            return GuardrailResult(
                passed=False,
                violation_type=CARD_TYPE,
                message="Card payment without credit or debit.",
                reply=CARD_TYPE_REPLY,
            )
        return PASSED


class ConfirmationAudioGuardrail:
    """Requests to hear the order confirmation as audio."""

    def check(self, text: str) -> GuardrailResult:
        if detectors.is_audio_confirmation_request(text):
            return GuardrailResult(
                passed=False,
                violation_type=AUDIO_CONFIRMATION,
                message="Customer asked for the confirmation as audio.",
            )
        return PASSED


class ImageRequestGuardrail:
    """Direct requests to see the menu or specific flavors."""

    def check(self, text: str, menu_items: Sequence[MenuItem]) -> GuardrailResult:
        image_ids = detectors.detect_image_request(text, menu_items)
        if not image_ids:
            return PASSED
        return GuardrailResult(
            passed=False,
            violation_type=IMAGE_REQUEST,
            message=f"Customer asked to see {', '.join(image_ids)}.",
            image_ids=image_ids,
        )


class GuardrailPipeline:
    """Composes the intercepts in precedence order."""

    def __init__(self, unsupported_media_reply: str) -> None:
        self.reset = ResetGuardrail()
        self.media = MediaGuardrail(unsupported_media_reply)
        self.address_number = AddressNumberGuardrail()
        self.payment = PaymentGuardrail()
        self.audio = ConfirmationAudioGuardrail()
        self.images = ImageRequestGuardrail()

    def check_session(self, message: InboundMessage) -> list[GuardrailResult]:
        """Checks that do not need the conversation: reset and media kind."""
        results = [
            self.reset.check(message.text),
            self.media.check(message),
        ]
        return [r for r in results if not r.passed]

    def check_turn(
        self,
        conversation: Conversation,
        text: str,
        menu_items: Sequence[MenuItem] = (),
    ) -> list[GuardrailResult]:
        """Intercepts that depend on the conversation state, highest precedence first."""
        results = [
            self.address_number.check(conversation, text),
            self.payment.check(conversation, text),
            self.audio.check(text),
            self.images.check(text, menu_items),
        ]
        failed = [r for r in results if not r.passed]
        for result in failed:
            logger.debug("Guardrail %s triggered: %s", result.violation_type, result.message)
        return failed
