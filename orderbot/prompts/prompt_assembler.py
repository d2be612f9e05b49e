"""
System prompt and chat history assembly.

The configured prompt template carries ``{{PLACEHOLDER}}`` tokens that are
filled from the cached catalog context and the conversation. Placeholders
left unresolved are logged, never fatal. Address and payment states get an
addendum that biases the model's phrasing.

Usage:
    assembler = PromptAssembler(currency="R$", history_window=10)
    prompt = assembler.build_system_prompt(context, conversation)
    messages = assembler.build_messages(prompt, conversation)
"""

import logging
import re
from datetime import date
from typing import Optional

from orderbot.prompts import system_prompts
from orderbot.prompts.prompt_templates import format_menu, format_payment_methods
from orderbot.schemas.catalog_schema import CachedContext
from orderbot.schemas.conversation_schema import Conversation, Role

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")


class PromptAssembler:
    """Builds the model input for one turn."""

    def __init__(self, currency: str = "R$", history_window: int = 10) -> None:
        self._currency = currency
        self._history_window = history_window

    def replacements(
        self,
        context: CachedContext,
        conversation: Conversation,
        today: Optional[date] = None,
    ) -> dict[str, str]:
        """Placeholder values for this conversation. Menu and payments only when present."""
        bot = context.bot_config
        story = context.story
        address = conversation.address_data
        today = today or date.today()

        values = {
            "BOT_NAME": (bot.name if bot else "") or system_prompts.DEFAULT_BOT_NAME,
            "BOT_DESCRIPTION": (bot.description if bot else "") or system_prompts.DEFAULT_BOT_DESCRIPTION,
            "PERSONALIDADE": bot.personality if bot else "",
            "PROCEDIMENTO": bot.procedure if bot else "",
            "REGRAS": bot.rules if bot else "",
            "HISTORIA": (story.content if story else "") or system_prompts.MISSING_STORY,
            "CURRENT_STATE": str(conversation.state),
            "CURRENT_DATE": today.isoformat(),
            "ENDERECO_VALIDADO.cep": (
                (address.components.cep if address else "") or system_prompts.MISSING_ADDRESS
            ),
            "ENDERECO_VALIDADO.formattedAddress": (
                (address.formatted_address if address else "") or system_prompts.MISSING_ADDRESS
            ),
        }
        if context.menu_items:
            values["CARDAPIO"] = format_menu(context.menu_items, self._currency)
        if context.payment_methods:
            values["FORMAS_PAGAMENTO"] = format_payment_methods(context.payment_methods)
        return values

    def build_system_prompt(
        self,
        context: CachedContext,
        conversation: Conversation,
        today: Optional[date] = None,
    ) -> str:
        """Fill the configured template, or fall back to the built-in prompt."""
        template = context.bot_config.prompt_template if context.bot_config else ""
        if not template:
            logger.warning("No prompt template configured, using fallback prompt")
            return system_prompts.FALLBACK_SYSTEM_PROMPT

        prompt = template
        for name, value in self.replacements(context, conversation, today).items():
            prompt = prompt.replace("{{" + name + "}}", value)

        addendum = system_prompts.state_addendum(conversation.state)
        if addendum:
            prompt += addendum

        remaining = _PLACEHOLDER_RE.findall(prompt)
        if remaining:
            logger.warning("Unresolved prompt placeholders: %s", sorted(set(remaining)))
        return prompt

    def build_messages(self, system_prompt: str, conversation: Conversation) -> list[dict[str, str]]:
        """
        Chat messages for the completion call.

        The last ``history_window`` messages are sent; the latest customer
        message carries the tag protocol reminder.
        """
        history = conversation.messages[-self._history_window:]
        messages = [{"role": "system", "content": system_prompt}]
        for message in history:
            role = "user" if message.role == Role.USER else "assistant"
            messages.append({"role": role, "content": message.content})

        for entry in reversed(messages):
            if entry["role"] == "user":
                entry["content"] = entry["content"] + system_prompts.FORMAT_REMINDER
                break
        return messages

    @staticmethod
    def build_enrichment_messages(
        initial_response: str, additional_info: str, user_text: str
    ) -> list[dict[str, str]]:
        prompt = system_prompts.ENRICHMENT_PROMPT.format(
            initial_response=initial_response, additional_info=additional_info
        )
        return [
            {"role": "system", "content": prompt},
            {"role": "user", "content": user_text},
        ]
