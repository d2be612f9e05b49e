"""
Order orchestrator: the single engine behind every channel adapter.

One inbound message is one turn. A turn runs start to finish under the
identity's lock, so turns for the same customer never interleave while
different customers proceed concurrently.

Turn order:
    reset / unsupported media -> open conversation -> postal code capture
    -> turn intercepts (house number, payment, confirmation audio, image
    requests) -> prompt assembly -> model call (+ optional enrichment)
    -> tagged block parsing -> order staging / commit -> state detectors
    -> multi-modal response resolution -> persist

Every failure degrades to a conversational reply; nothing propagates to
the adapter.

Usage:
    orchestrator = create_orchestrator(settings)
    response = await orchestrator.handle_message(
        InboundMessage(identity="5511999999999@c.us", text="quero uma pizza")
    )
"""

import asyncio
import contextlib
import dataclasses
import time
from datetime import datetime, timezone
from typing import Optional

from orderbot.config import AppConfig
from orderbot.conversation import detectors
from orderbot.conversation.guardrails import (
    AUDIO_CONFIRMATION,
    CARD_TYPE,
    HOUSE_NUMBER,
    IMAGE_REQUEST,
    PAYMENT_PROMPT,
    RESET,
    UNSUPPORTED_MEDIA,
    GuardrailPipeline,
    GuardrailResult,
)
from orderbot.conversation.response_resolver import ResponseResolver
from orderbot.conversation.state_machine import (
    ConversationStateMachine,
    OrderState,
    TransitionTrigger,
    TurnContext,
)
from orderbot.conversation.tagged_response import (
    ParsedResponse,
    parse_tagged_response,
    serialize_blocks,
    strip_info_requests,
)
from orderbot.errors import ExternalServiceError
from orderbot.logging_context import get_call_logger, set_call_id
from orderbot.prompts import system_prompts
from orderbot.prompts.context_cache import ContextCache
from orderbot.prompts.prompt_assembler import PromptAssembler
from orderbot.prompts.prompt_templates import build_enrichment_info
from orderbot.schemas.catalog_schema import CachedContext
from orderbot.schemas.conversation_schema import AddressData, Conversation, Role
from orderbot.schemas.message_schema import ImageAttachment, InboundMessage, OutboundResponse
from orderbot.schemas.order_schema import OrderItem, OrderPayload
from orderbot.tools.address import AddressService
from orderbot.tools.catalog import CatalogImageResolver
from orderbot.tools.imaging import ImageFetcher
from orderbot.tools.llm import CompletionService, OpenAICompletionService
from orderbot.tools.orders import (
    CommitStatus,
    OrderCommitter,
    StagedOrderRegistry,
    StageStatus,
)
from orderbot.tools.speech import OpenAISpeechSynthesizer, SpeechSynthesizer
from orderbot.tools.store import DocumentStore, InMemoryStore
from orderbot.utils import display_flavor, normalize_phone

logger = get_call_logger(__name__)


class OrderOrchestrator:
    """Drives one ordering turn per inbound message."""

    def __init__(
        self,
        store: DocumentStore,
        completion: CompletionService,
        speech: SpeechSynthesizer,
        address_service: AddressService,
        image_resolver: CatalogImageResolver,
        *,
        cache: Optional[ContextCache] = None,
        registry: Optional[StagedOrderRegistry] = None,
        assembler: Optional[PromptAssembler] = None,
        welcome_message: str = "Olá! Como posso ajudar com seu pedido hoje?",
        unsupported_media_message: str = "Desculpe, só consigo processar mensagens de texto e áudio.",
        currency: str = "R$",
        delivery_minutes: int = 50,
        stale_conversation_hours: float = 3.0,
        external_timeout: float = 30.0,
        slow_turn_threshold: float = 5.0,
    ) -> None:
        self._store = store
        self._completion = completion
        self._address = address_service
        self._cache = cache or ContextCache(store)
        self._registry = registry or StagedOrderRegistry()
        self._assembler = assembler or PromptAssembler(currency=currency)
        self._guardrails = GuardrailPipeline(unsupported_media_message)
        self._resolver = ResponseResolver(image_resolver, speech, timeout=external_timeout)
        self._committer = OrderCommitter(store, self._registry, delivery_minutes, currency)
        self._welcome_message = welcome_message
        self._currency = currency
        self._delivery_minutes = delivery_minutes
        self._stale_hours = stale_conversation_hours
        self._timeout = external_timeout
        self._slow_turn_threshold = slow_turn_threshold
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def registry(self) -> StagedOrderRegistry:
        return self._registry

    @property
    def address_service(self) -> AddressService:
        return self._address

    @contextlib.asynccontextmanager
    async def _identity_turn(self, identity: str):
        """Serialize turns of one identity. The lock is dropped once no turn holds or awaits it."""
        lock = self._locks.setdefault(identity, asyncio.Lock())
        self._lock_users[identity] = self._lock_users.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[identity] -= 1
            if not self._lock_users[identity]:
                del self._lock_users[identity]
                del self._locks[identity]

    async def handle_message(self, message: InboundMessage) -> OutboundResponse:
        """Process one inbound message. Never raises."""
        identity = normalize_phone(message.identity)
        async with self._identity_turn(identity):
            set_call_id(identity)
            started = time.monotonic()
            try:
                return await self._run_turn(identity, message)
            except Exception:
                logger.error("Turn failed for %s", identity, exc_info=True)
                return OutboundResponse(success=False, text=system_prompts.TECHNICAL_PROBLEM_REPLY)
            finally:
                elapsed = time.monotonic() - started
                if elapsed > self._slow_turn_threshold:
                    logger.warning("Slow turn: %.2fs (threshold %.1fs)", elapsed, self._slow_turn_threshold)
                else:
                    logger.debug("Turn completed in %.2fs", elapsed)

    # ------------------------------------------------------------------ #
    # Turn pipeline
    # ------------------------------------------------------------------ #

    async def _run_turn(self, identity: str, message: InboundMessage) -> OutboundResponse:
        text = message.text.strip()
        session_checks = {r.violation_type: r for r in self._guardrails.check_session(message)}
        context = await self._cache.get()

        if RESET in session_checks:
            return await self._reset(identity, message, context)

        conversation = await self.open_conversation(identity)
        machine = ConversationStateMachine(conversation)

        if UNSUPPORTED_MEDIA in session_checks:
            return await self._unsupported_media(
                conversation, machine, message, session_checks[UNSUPPORTED_MEDIA], context
            )

        conversation.add_user_message(text, message.is_voice_transcript)
        await self._capture_postal_code(conversation, text)

        intercepts = self._guardrails.check_turn(conversation, text, context.menu_items)
        if intercepts:
            return await self._intercept(conversation, machine, intercepts[0], context)

        raw = await self._ask_model(conversation, context, text)
        if raw is None:
            await self._save(conversation)
            return OutboundResponse(
                success=False, text=system_prompts.TECHNICAL_PROBLEM_REPLY, state=conversation.state
            )

        parsed = parse_tagged_response(raw)
        if parsed.repaired:
            logger.info("Model reply had no tagged blocks; delivered as text")
        return await self._apply_reply(conversation, machine, parsed, raw, text, context)

    async def open_conversation(self, identity: str) -> Conversation:
        """Latest open conversation, or a new one when none exists, it is committed, or it went stale."""
        conversation = await self._store.latest_conversation(identity)
        if conversation is None:
            reason = "first contact"
        elif conversation.state == OrderState.ORDER_COMMITTED:
            reason = "previous order committed"
        elif conversation.age_hours() > self._stale_hours:
            reason = f"previous conversation older than {self._stale_hours:g}h"
        else:
            return conversation
        conversation = await self._store.create_conversation(identity)
        logger.info("New conversation %s for %s (%s)", conversation.id, identity, reason)
        return conversation

    async def _reset(self, identity: str, message: InboundMessage, context: CachedContext) -> OutboundResponse:
        conversation = await self._store.create_conversation(identity)
        self._registry.pop(identity)
        logger.info("Conversation reset by customer; new conversation %s", conversation.id)
        conversation.add_user_message(message.text.strip(), message.is_voice_transcript)
        welcome = (context.bot_config.welcome_message if context.bot_config else "") or self._welcome_message
        return await self._reply(conversation, welcome)

    async def _capture_postal_code(self, conversation: Conversation, text: str) -> None:
        cep = detectors.find_cep(text)
        if cep is None:
            return
        try:
            resolved = await asyncio.wait_for(self._address.lookup_cep(cep), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Postal code lookup for %s timed out", cep)
            return
        if resolved is not None:
            conversation.address_data = resolved
            logger.info("Postal code %s stored as delivery address", cep)

    async def _intercept(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        result: GuardrailResult,
        context: CachedContext,
    ) -> OutboundResponse:
        logger.info("Turn intercepted: %s", result.violation_type)

        if result.violation_type == HOUSE_NUMBER:
            self._complete_address(conversation, result.address or "")
            machine.advance_to(
                OrderState.PAYMENT_METHOD, TransitionTrigger.HOUSE_NUMBER_GIVEN, "house number spliced"
            )
            conversation.payment_prompted = True
            return await self._reply(conversation, result.reply or "")

        if result.violation_type == PAYMENT_PROMPT:
            conversation.payment_prompted = True
            return await self._reply(conversation, result.reply or "")

        if result.violation_type == CARD_TYPE:
            return await self._reply(conversation, result.reply or "")

        if result.violation_type == AUDIO_CONFIRMATION:
            return await self._confirmation_audio(conversation)

        if result.violation_type == IMAGE_REQUEST:
            raw = "".join(f"[IMAGE_FORMAT]{image_id}[/END]" for image_id in result.image_ids)
            parsed = parse_tagged_response(raw)
            response = await self._resolver.resolve(parsed, conversation.state, context.bot_config)
            conversation.add_message(Role.BOT, serialize_blocks(dataclasses.replace(parsed, text=response.text)))
            await self._save(conversation)
            return response

        logger.warning("Unhandled intercept %s", result.violation_type)
        return await self._reply(conversation, result.reply or system_prompts.TECHNICAL_PROBLEM_REPLY)

    @staticmethod
    def _complete_address(conversation: Conversation, address: str) -> None:
        if conversation.address_data is not None:
            conversation.address_data = conversation.address_data.model_copy(
                update={"formatted_address": address}
            )
        else:
            conversation.address_data = AddressData(formatted_address=address)
        if conversation.draft_order is not None:
            conversation.draft_order = conversation.draft_order.model_copy(update={"address": address})

    async def _confirmation_audio(self, conversation: Conversation) -> OutboundResponse:
        order = conversation.pending_order or self._registry.get(conversation.identity)
        confirmation = None
        if order is not None and not order.missing_fields():
            confirmation = self._committer.confirmation_text(order)
        else:
            latest = await self._store.latest_order(conversation.identity)
            if latest is not None:
                confirmation = latest.confirmation_text or self._committer.confirmation_text(
                    OrderPayload(items=latest.items, address=latest.address, payment_method=latest.payment_method)
                )
        if confirmation is None:
            return await self._reply(conversation, system_prompts.NO_ORDER_FOR_AUDIO_REPLY)

        voice_ref = await self._resolver.synthesize(confirmation)
        if voice_ref is None:
            return await self._reply(
                conversation,
                system_prompts.AUDIO_UNAVAILABLE_REPLY.format(minutes=self._delivery_minutes),
            )
        conversation.add_message(Role.BOT, f"[VOICE_FORMAT]{confirmation}[/END]")
        await self._save(conversation)
        return OutboundResponse(voice_asset_ref=voice_ref, state=conversation.state)

    async def _unsupported_media(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        message: InboundMessage,
        result: GuardrailResult,
        context: CachedContext,
    ) -> OutboundResponse:
        """Canned reply, unless the accompanying text already holds a complete order."""
        text = message.text.strip()
        conversation.add_message(Role.USER, text or f"[{message.media_kind}]")
        media_reply = (
            context.bot_config.unsupported_media_message if context.bot_config else ""
        ) or result.reply or ""

        items = detectors.mentioned_items(text, context.menu_items)
        payment = detectors.payment_from_text(text)
        if not (items and payment and detectors.find_cep(text)):
            return await self._reply(conversation, media_reply)

        try:
            validation = await asyncio.wait_for(
                self._address.validate_address(text), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.error("Address validation timed out for media message")
            return await self._reply(conversation, media_reply)

        components = validation.get("components")
        if components is not None:
            conversation.address_data = AddressData(
                formatted_address=validation.get("formatted_address", ""), components=components
            )

        order = OrderPayload(
            items=[OrderItem(name=items[0].name, quantity=1, price=items[0].price)],
            address=validation.get("formatted_address", ""),
            payment_method=payment,
        )
        if validation.get("requires_number"):
            conversation.draft_order = order
            machine.recover_address("media order without house number")
            logger.info("Order from media message needs a house number")
            return await self._reply(conversation, validation.get("message") or system_prompts.STAGING_NUMBER_REPLY)
        if not validation.get("valid"):
            return await self._reply(conversation, validation.get("message") or media_reply)

        staged = await self._committer.stage_payload(conversation, machine, order)
        logger.info("Order extracted from media message: %s", staged.status.value)
        return await self._reply(conversation, staged.reply_text or media_reply)

    # ------------------------------------------------------------------ #
    # Model call
    # ------------------------------------------------------------------ #

    async def _complete(self, messages: list[dict[str, str]]) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._completion.complete(messages), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Model call timed out after %.0fs", self._timeout)
        except ExternalServiceError as e:
            logger.error("Model call failed: %s", e, exc_info=True)
        return None

    async def _ask_model(
        self, conversation: Conversation, context: CachedContext, user_text: str
    ) -> Optional[str]:
        system_prompt = self._assembler.build_system_prompt(context, conversation)
        messages = self._assembler.build_messages(system_prompt, conversation)
        raw = await self._complete(messages)
        if raw is None:
            return None

        cleaned, kinds = strip_info_requests(raw)
        if not kinds:
            return raw

        info = build_enrichment_info(
            kinds, context.story, context.menu_items, context.payment_methods, self._currency
        )
        if not info:
            logger.info("Model requested %s but nothing is available", sorted(kinds))
            return cleaned

        logger.info("Enriching reply with %s", sorted(kinds))
        enriched = await self._complete(
            self._assembler.build_enrichment_messages(cleaned, info, user_text)
        )
        if enriched is None:
            return cleaned
        return strip_info_requests(enriched)[0]

    # ------------------------------------------------------------------ #
    # Applying the model reply
    # ------------------------------------------------------------------ #

    async def _apply_reply(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        parsed: ParsedResponse,
        raw: str,
        user_text: str,
        context: CachedContext,
    ) -> OutboundResponse:
        start_state = machine.current_state
        text_override: Optional[str] = None
        order_handled = False

        if parsed.json_text is not None:
            staged = await self._committer.stage(conversation, machine, parsed.json_text)
            order_handled = staged.status != StageStatus.INVALID
            if staged.status == StageStatus.MISSING_NUMBER:
                text_override = staged.reply_text
            elif staged.status == StageStatus.STAGED and not parsed.has_confirmation:
                text_override = staged.reply_text

        confirming = (
            start_state == OrderState.ORDER_CONFIRMATION
            and machine.current_state == OrderState.ORDER_CONFIRMATION
            and parsed.has_confirmation
            and detectors.is_affirmative(user_text)
        )
        if confirming:
            result = await self._committer.commit(conversation, machine, parsed.confirmation_text)
            if result.succeeded:
                return self._confirmation_response(result.reply_text, context)
            text_override = result.reply_text
            order_handled = True

        if not order_handled and start_state < OrderState.ORDER_CONFIRMATION:
            machine.advance(TurnContext(
                user_text=user_text,
                model_text=raw,
                conversation=conversation,
                parsed=parsed,
                menu_names=self._menu_names(context),
            ))
        machine.check_invariants()

        if text_override is not None:
            parsed = dataclasses.replace(parsed, text=text_override)
        response = await self._resolver.resolve(parsed, machine.current_state, context.bot_config)
        conversation.add_message(Role.BOT, serialize_blocks(dataclasses.replace(parsed, text=response.text)))
        await self._save(conversation)
        return response

    def _confirmation_response(self, text: str, context: CachedContext) -> OutboundResponse:
        response = OutboundResponse(text=text, state=int(OrderState.ORDER_COMMITTED))
        bot = context.bot_config
        if bot is not None and bot.confirmation_image:
            caption = bot.confirmation_image_caption or system_prompts.CONFIRMATION_IMAGE_CAPTION
            response.image_asset_ref = bot.confirmation_image
            response.image_caption = caption
            response.all_images = [ImageAttachment(id="confirmacao", url=bot.confirmation_image, caption=caption)]
        return response

    @staticmethod
    def _menu_names(context: CachedContext) -> tuple[str, ...]:
        names: list[str] = []
        for item in context.menu_items:
            names.append(item.name)
            flavor = display_flavor(item.name)
            if flavor and flavor != item.name:
                names.append(flavor)
        return tuple(names)

    async def _reply(self, conversation: Conversation, text: str) -> OutboundResponse:
        conversation.add_message(Role.BOT, f"[TEXT_FORMAT]{text}[/END]")
        await self._save(conversation)
        return OutboundResponse(text=text, state=conversation.state)

    async def _save(self, conversation: Conversation) -> None:
        conversation.refresh_duration(datetime.now(timezone.utc))
        await self._store.save_conversation(conversation)


def create_orchestrator(
    config: AppConfig, store: Optional[DocumentStore] = None
) -> OrderOrchestrator:
    """Wire the production collaborators from configuration."""
    store = store or InMemoryStore()
    timeout = float(config.conversation.external_timeout_sec)
    fetcher = ImageFetcher(timeout=timeout)
    return OrderOrchestrator(
        store=store,
        completion=OpenAICompletionService(
            api_key=config.services.openai_api_key,
            model=config.model.llm_model,
            temperature=config.model.llm_temperature,
            max_tokens=config.model.llm_max_tokens,
            timeout=timeout,
        ),
        speech=OpenAISpeechSynthesizer(
            api_key=config.services.openai_api_key,
            media_dir=config.services.media_dir,
            url_prefix=config.services.media_url_prefix,
            model=config.model.tts_model,
            voice=config.model.tts_voice,
            timeout=timeout,
        ),
        address_service=AddressService(
            base_url=config.services.cep_api_url,
            delivery_city=config.store.delivery_city,
            delivery_state=config.store.delivery_state,
            timeout=timeout,
        ),
        image_resolver=CatalogImageResolver(store, fetcher),
        cache=ContextCache(store, ttl_seconds=config.conversation.context_cache_ttl_sec),
        registry=StagedOrderRegistry(ttl_seconds=config.conversation.staged_order_ttl_sec),
        assembler=PromptAssembler(
            currency=config.store.currency_symbol,
            history_window=config.model.history_window,
        ),
        welcome_message=config.store.welcome_message,
        unsupported_media_message=config.store.unsupported_media_message,
        currency=config.store.currency_symbol,
        delivery_minutes=config.store.delivery_minutes,
        stale_conversation_hours=config.conversation.stale_conversation_hours,
        external_timeout=timeout,
        slow_turn_threshold=config.conversation.slow_turn_threshold_sec,
    )
