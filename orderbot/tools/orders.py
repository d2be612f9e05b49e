"""
Order extraction, staging and idempotent commit.

A JSON block from the model is normalized into an ``OrderPayload`` (two wire
shapes are accepted), validated, and staged on the conversation. The commit
persists exactly one ``Order`` per conversation: replays return the stored
confirmation instead of writing again.

Usage:
    committer = OrderCommitter(store, StagedOrderRegistry())
    staged = await committer.stage(conversation, machine, parsed.json_text)
    result = await committer.commit(conversation, machine, parsed.confirmation_text)
"""

import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from orderbot.conversation.detectors import number_only
from orderbot.conversation.guardrails import splice_address
from orderbot.conversation.state_machine import (
    ConversationStateMachine,
    OrderState,
    TransitionTrigger,
)
from orderbot.errors import OrderValidationError
from orderbot.prompts import system_prompts
from orderbot.prompts.prompt_templates import build_confirmation_text, build_order_summary
from orderbot.schemas.conversation_schema import Conversation, Role
from orderbot.schemas.order_schema import Order, OrderItem, OrderPayload
from orderbot.tools.store import DocumentStore
from orderbot.utils import has_digit

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_NUMBER_PATTERNS = (
    re.compile(r"n[uú]mero\s+(\d+)", re.IGNORECASE),
    re.compile(r",\s*(\d{1,5})(?![\d-])"),
    re.compile(r"n[º°]\s*(\d+)", re.IGNORECASE),
)


# ------------------------------------------------------------------ #
# Wire shapes
# ------------------------------------------------------------------ #

class FlatOrderWire(BaseModel):
    """``{"items": [...], "endereco": "...", "pagamento": "..."}``"""

    items: list[OrderItem] = Field(
        default_factory=list, validation_alias=AliasChoices("items", "itens")
    )
    endereco: str = Field(default="", validation_alias=AliasChoices("endereco", "address"))
    pagamento: str = Field(
        default="", validation_alias=AliasChoices("pagamento", "payment_method", "paymentMethod")
    )

    @field_validator("endereco", "pagamento", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def normalize(self) -> OrderPayload:
        return OrderPayload(
            items=self.items,
            address=self.endereco.strip(),
            payment_method=self.pagamento.strip(),
        )


class NestedOrderWire(BaseModel):
    """``{"pedido": {...flat shape...}}``"""

    pedido: FlatOrderWire

    def normalize(self) -> OrderPayload:
        return self.pedido.normalize()


def _wire_shape(value: Any) -> str:
    return "nested" if isinstance(value, dict) and "pedido" in value else "flat"


OrderWire = Annotated[
    Union[
        Annotated[NestedOrderWire, Tag("nested")],
        Annotated[FlatOrderWire, Tag("flat")],
    ],
    Discriminator(_wire_shape),
]

_ORDER_WIRE = TypeAdapter(OrderWire)


def _extract_json_object(text: str) -> str:
    cleaned = _CODE_FENCE_RE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise OrderValidationError("No JSON object in order block")
    return cleaned[start:end + 1]


def parse_order_payload(json_text: str) -> OrderPayload:
    """
    Normalize an order block into an ``OrderPayload``.

    Raises:
        OrderValidationError: If the text is not a JSON object of either
            accepted shape.
    """
    try:
        raw = json.loads(_extract_json_object(json_text))
    except json.JSONDecodeError as e:
        raise OrderValidationError(f"Malformed order JSON: {e.msg}") from e
    try:
        wire = _ORDER_WIRE.validate_python(raw)
    except ValidationError as e:
        raise OrderValidationError(f"Order payload has an unexpected shape: {e.error_count()} errors") from e
    return wire.normalize()


def validate_order(order: OrderPayload) -> None:
    """Raise ``OrderValidationError`` naming the empty required fields."""
    missing = order.missing_fields()
    if missing:
        raise OrderValidationError(
            f"Order is missing: {', '.join(missing)}", missing=tuple(missing)
        )


# ------------------------------------------------------------------ #
# Staged order registry
# ------------------------------------------------------------------ #

class StagedOrderRegistry:
    """
    Most recent staged order per identity.

    Entries older than ``ttl_seconds`` are evicted on access. One writer per
    identity at a time is guaranteed by the orchestrator's per-identity lock.
    """

    def __init__(
        self, ttl_seconds: float = 10800.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, OrderPayload]] = {}

    def put(self, identity: str, order: OrderPayload) -> None:
        self._entries[identity] = (self._clock(), order.model_copy(deep=True))

    def get(self, identity: str) -> Optional[OrderPayload]:
        self.evict_expired()
        entry = self._entries.get(identity)
        return entry[1].model_copy(deep=True) if entry else None

    def pop(self, identity: str) -> Optional[OrderPayload]:
        entry = self._entries.pop(identity, None)
        return entry[1] if entry else None

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._entries)


# ------------------------------------------------------------------ #
# Address number recovery
# ------------------------------------------------------------------ #

def _address_has_house_number(conversation: Conversation) -> bool:
    address = conversation.address_data
    if address is None or not address.components.street:
        return False
    pattern = re.escape(address.components.street) + r",\s*\d+"
    return re.search(pattern, address.formatted_address) is not None


def recover_address_number(order_address: str, conversation: Conversation) -> Optional[str]:
    """
    Rebuild a complete address for an order whose address lacks a number.

    Uses the resolved address when it already carries a house number, then
    searches the customer's messages, newest first.
    """
    if _address_has_house_number(conversation):
        return conversation.address_data.formatted_address  # type: ignore[union-attr]

    for text in reversed(conversation.user_texts()):
        number = number_only(text)
        if number is None:
            for pattern in _NUMBER_PATTERNS:
                match = pattern.search(text)
                if match:
                    number = match.group(1)
                    break
        if number is None:
            continue
        spliced = splice_address(conversation, number)
        if spliced:
            return spliced
        if order_address:
            return f"{order_address}, {number}"
    return None


# ------------------------------------------------------------------ #
# Staging and commit
# ------------------------------------------------------------------ #

class StageStatus(str, Enum):
    STAGED = "staged"
    MISSING_NUMBER = "missing_number"
    INVALID = "invalid"


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"
    NO_ORDER = "no_order"
    MISSING_NUMBER = "missing_number"


@dataclass
class StageResult:
    status: StageStatus
    order: Optional[OrderPayload] = None
    reply_text: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CommitResult:
    status: CommitStatus
    reply_text: str
    order_ref: Optional[str] = None
    next_conversation: Optional[Conversation] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (CommitStatus.COMMITTED, CommitStatus.ALREADY_COMMITTED)


class OrderCommitter:
    """Stages model-extracted orders and commits them exactly once."""

    def __init__(
        self,
        store: DocumentStore,
        registry: StagedOrderRegistry,
        delivery_minutes: int = 50,
        currency: str = "R$",
    ) -> None:
        self._store = store
        self._registry = registry
        self._delivery_minutes = delivery_minutes
        self._currency = currency

    @property
    def registry(self) -> StagedOrderRegistry:
        return self._registry

    def summary_text(self, order: OrderPayload) -> str:
        return build_order_summary(order, self._currency)

    def confirmation_text(self, order: OrderPayload) -> str:
        return build_confirmation_text(order, self._delivery_minutes, self._currency)

    async def stage(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        json_text: str,
    ) -> StageResult:
        """
        Validate an order block and stage it on the conversation.

        An address without a house number sends the conversation back to
        DELIVERY_ADDRESS and keeps the payload only as a draft. A valid order
        moves the conversation to at least ORDER_CONFIRMATION; it never
        commits.
        """
        try:
            order = parse_order_payload(json_text)
        except OrderValidationError as e:
            logger.warning("Order block rejected: %s", e)
            return StageResult(StageStatus.INVALID, error=str(e))
        return await self.stage_payload(conversation, machine, order)

    async def stage_payload(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        order: OrderPayload,
    ) -> StageResult:
        """Stage an already normalized order. See ``stage``."""
        try:
            validate_order(order)
        except OrderValidationError as e:
            logger.warning("Order block rejected: %s", e)
            if machine.is_terminal() or "address" not in e.missing:
                return StageResult(StageStatus.INVALID, error=str(e))
            conversation.draft_order = order
            machine.recover_address("order without address")
            return StageResult(
                StageStatus.MISSING_NUMBER,
                order=order,
                reply_text=system_prompts.STAGING_NUMBER_REPLY,
                error=str(e),
            )

        if machine.is_terminal():
            logger.warning("Ignoring order block on committed conversation %s", conversation.id)
            return StageResult(StageStatus.INVALID, order=order, error="conversation committed")

        if not has_digit(order.address):
            conversation.draft_order = order
            machine.recover_address("order address without house number")
            logger.info("Order address lacks a house number; asking for it")
            return StageResult(
                StageStatus.MISSING_NUMBER,
                order=order,
                reply_text=system_prompts.STAGING_NUMBER_REPLY,
            )

        conversation.pending_order = order
        conversation.draft_order = None
        self._registry.put(conversation.identity, order)
        if machine.current_state < OrderState.ORDER_CONFIRMATION:
            machine.advance_to(
                OrderState.ORDER_CONFIRMATION, TransitionTrigger.ORDER_STAGED, "order staged"
            )
        logger.info(
            "Order staged for %s: %d items, total %.2f",
            conversation.identity, len(order.items), order.total_value,
        )
        return StageResult(StageStatus.STAGED, order=order, reply_text=self.summary_text(order))

    async def commit(
        self,
        conversation: Conversation,
        machine: ConversationStateMachine,
        confirmation_text: Optional[str] = None,
    ) -> CommitResult:
        """
        Persist the staged order once.

        Returns the stored confirmation when the conversation was already
        committed. Sends the conversation back to DELIVERY_ADDRESS when the
        address has no house number and none can be recovered.
        """
        if conversation.committed_order_ref:
            logger.info(
                "Conversation %s already committed as %s; replaying confirmation",
                conversation.id, conversation.committed_order_ref,
            )
            return CommitResult(
                CommitStatus.ALREADY_COMMITTED,
                reply_text=conversation.confirmation_text or "",
                order_ref=conversation.committed_order_ref,
            )

        order = conversation.pending_order or self._registry.get(conversation.identity)
        if order is None or order.missing_fields():
            logger.warning("Confirmation without a staged order in %s", conversation.id)
            return CommitResult(CommitStatus.NO_ORDER, reply_text=system_prompts.ORDER_NOT_FOUND_REPLY)

        if not has_digit(order.address):
            recovered = recover_address_number(order.address, conversation)
            if recovered is None:
                machine.recover_address("house number missing at commit")
                conversation.draft_order = order
                conversation.pending_order = None
                logger.info("Commit blocked: no house number for %s", conversation.identity)
                return CommitResult(
                    CommitStatus.MISSING_NUMBER, reply_text=system_prompts.COMMIT_NUMBER_REPLY
                )
            logger.info("Recovered house number for order address: %s", recovered)
            order = order.model_copy(update={"address": recovered})

        ref = f"PD-{uuid.uuid4().hex[:8].upper()}"
        text = (confirmation_text or "").strip() or self.confirmation_text(order)
        record = Order(
            ref=ref,
            identity=conversation.identity,
            conversation_id=conversation.id,
            items=order.items,
            total_value=order.total_value,
            address=order.address,
            payment_method=order.payment_method,
            confirmation_text=text,
        )
        await self._store.insert_order(record)

        conversation.pending_order = order
        conversation.confirmation_text = text
        machine.mark_committed(ref)
        self._registry.pop(conversation.identity)
        conversation.add_message(Role.BOT, f"[TEXT_FORMAT]{text}[/END]")
        await self._store.save_conversation(conversation)

        next_conversation = await self._store.create_conversation(conversation.identity)
        logger.info("Order %s committed for %s (total %.2f)", ref, conversation.identity, record.total_value)
        return CommitResult(
            CommitStatus.COMMITTED,
            reply_text=text,
            order_ref=ref,
            next_conversation=next_conversation,
        )
