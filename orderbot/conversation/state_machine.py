"""
Finite state machine for the ordering dialogue.

Eight states run linearly from flavor selection to the committed order.
Each state owns one detector function; the detector table turns a turn's
customer text and model reply into at most one forward transition. The only
backward edge is the address recovery to DELIVERY_ADDRESS, used when an
order turns out to lack a house number. A reset is not a transition: it
starts a new conversation.

Usage:
    sm = ConversationStateMachine(conversation)
    sm.advance(TurnContext(user_text="quero uma pizza amazonas"))
    assert sm.current_state == OrderState.WHOLE_OR_SPLIT
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from orderbot.conversation import detectors
from orderbot.conversation.tagged_response import ParsedResponse
from orderbot.schemas.conversation_schema import Conversation
from orderbot.schemas.order_schema import OrderPayload
from orderbot.utils import has_digit

logger = logging.getLogger(__name__)


class OrderState(IntEnum):
    """All states of an ordering conversation, in order."""
    FLAVOR_SELECTION = 0
    WHOLE_OR_SPLIT = 1
    ADD_MORE_OR_FINALIZE = 2
    BEVERAGES = 3
    DELIVERY_ADDRESS = 4
    PAYMENT_METHOD = 5
    ORDER_CONFIRMATION = 6
    ORDER_COMMITTED = 7


class TransitionTrigger(str, Enum):
    """Events that cause state transitions."""
    FLAVOR_CHOSEN = "flavor_chosen"
    SIZE_CHOSEN = "size_chosen"
    ORDER_FINALIZED = "order_finalized"
    BEVERAGE_ANSWERED = "beverage_answered"
    ADDRESS_GIVEN = "address_given"
    HOUSE_NUMBER_GIVEN = "house_number_given"
    PAYMENT_CHOSEN = "payment_chosen"
    ORDER_STAGED = "order_staged"
    ORDER_CONFIRMED = "order_confirmed"
    ADDRESS_INCOMPLETE = "address_incomplete"


@dataclass(frozen=True)
class Transition:
    """A single state change proposed by a detector or the orchestrator."""
    from_state: OrderState
    to_state: OrderState
    trigger: TransitionTrigger
    reason: str = ""


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: OrderState
    entered_at: datetime
    trigger: Optional[TransitionTrigger] = None


@dataclass
class TurnContext:
    """Everything a detector may look at for one turn."""
    user_text: str
    model_text: str = ""
    conversation: Optional[Conversation] = None
    parsed: Optional[ParsedResponse] = None
    menu_names: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_confirmation_block(self) -> bool:
        if self.parsed is not None:
            return self.parsed.has_confirmation
        return "[CONFIRMATION_FORMAT]" in self.model_text


class InvalidTransitionError(Exception):
    """Raised when a transition would break the monotonic ordering flow."""


def is_committable(order: Optional[OrderPayload]) -> bool:
    """Staged order has items, an address with a house number and a payment method."""
    return (
        order is not None
        and not order.missing_fields()
        and has_digit(order.address)
    )


# ------------------------------------------------------------------ #
# Per-state detectors
# ------------------------------------------------------------------ #

Detector = Callable[[OrderState, TurnContext], Optional[Transition]]


def _step(state: OrderState, trigger: TransitionTrigger, reason: str) -> Transition:
    return Transition(state, OrderState(state + 1), trigger, reason)


def detect_flavor(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.contains_any(ctx.user_text, detectors.FLAVOR_WORDS):
        return _step(state, TransitionTrigger.FLAVOR_CHOSEN, "order keyword")
    if detectors.contains_any(ctx.user_text, ctx.menu_names):
        return _step(state, TransitionTrigger.FLAVOR_CHOSEN, "flavor named")
    return None


def detect_whole_or_split(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.contains_any(ctx.user_text, detectors.WHOLE_OR_SPLIT_WORDS):
        return _step(state, TransitionTrigger.SIZE_CHOSEN, "whole or split answered")
    if detectors.contains_any(ctx.model_text, detectors.SIZE_OR_SPLIT_PROMPT_WORDS):
        return _step(state, TransitionTrigger.SIZE_CHOSEN, "model moved on to size")
    return None


def detect_finalize(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.contains_any(ctx.user_text, detectors.FINALIZE_WORDS):
        return _step(state, TransitionTrigger.ORDER_FINALIZED, "finalize or add more")
    return None


def detect_beverage(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.contains_any(ctx.user_text, detectors.BEVERAGE_WORDS):
        return _step(state, TransitionTrigger.BEVERAGE_ANSWERED, "beverage answered")
    return None


def detect_address(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.find_cep(ctx.user_text):
        return _step(state, TransitionTrigger.ADDRESS_GIVEN, "postal code")
    if detectors.has_number_token(ctx.user_text):
        return _step(state, TransitionTrigger.HOUSE_NUMBER_GIVEN, "numeric token")
    return None


def detect_payment(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    if detectors.mentions_payment(ctx.user_text):
        return _step(state, TransitionTrigger.PAYMENT_CHOSEN, "payment method")
    return None


def detect_confirmation(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    pending = ctx.conversation.pending_order if ctx.conversation else None
    if (
        detectors.is_affirmative(ctx.user_text)
        and ctx.has_confirmation_block
        and is_committable(pending)
    ):
        return _step(state, TransitionTrigger.ORDER_CONFIRMED, "customer confirmed")
    return None


def detect_nothing(state: OrderState, ctx: TurnContext) -> Optional[Transition]:
    return None


DETECTORS: dict[OrderState, Detector] = {
    OrderState.FLAVOR_SELECTION: detect_flavor,
    OrderState.WHOLE_OR_SPLIT: detect_whole_or_split,
    OrderState.ADD_MORE_OR_FINALIZE: detect_finalize,
    OrderState.BEVERAGES: detect_beverage,
    OrderState.DELIVERY_ADDRESS: detect_address,
    OrderState.PAYMENT_METHOD: detect_payment,
    OrderState.ORDER_CONFIRMATION: detect_confirmation,
    OrderState.ORDER_COMMITTED: detect_nothing,
}


def should_advance(
    state: int,
    user_text: str,
    model_text: str,
    conversation: Optional[Conversation] = None,
    menu_names: tuple[str, ...] = (),
) -> bool:
    """True when the detector for ``state`` proposes a transition this turn."""
    order_state = OrderState(state)
    ctx = TurnContext(
        user_text=user_text,
        model_text=model_text,
        conversation=conversation,
        menu_names=menu_names,
    )
    return DETECTORS[order_state](order_state, ctx) is not None


class ConversationStateMachine:
    """
    State controller bound to one conversation.

    State lives on the conversation record so it survives between turns;
    this class only enforces how it may change. Forward moves of any length
    are allowed, backward moves only through ``recover_address``, and nothing
    leaves ORDER_COMMITTED.
    """

    def __init__(
        self,
        conversation: Conversation,
        detector_table: Optional[dict[OrderState, Detector]] = None,
    ) -> None:
        self._conversation = conversation
        self._detectors = detector_table or DETECTORS
        self._history: list[StateEntry] = [
            StateEntry(state=self.current_state, entered_at=conversation.state_entered_at)
        ]

    @property
    def current_state(self) -> OrderState:
        return OrderState(self._conversation.state)

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    def evaluate(self, ctx: TurnContext) -> Optional[Transition]:
        """Ask the current state's detector for a transition without applying it."""
        state = self.current_state
        return self._detectors[state](state, ctx)

    def advance(self, ctx: TurnContext) -> Optional[Transition]:
        """Evaluate and apply the current state's detector."""
        transition = self.evaluate(ctx)
        if transition is not None:
            self.apply(transition)
        return transition

    def advance_to(
        self, target: OrderState, trigger: TransitionTrigger, reason: str = ""
    ) -> Transition:
        """Move forward to ``target``. Staying put is allowed; going back is not."""
        transition = Transition(self.current_state, target, trigger, reason)
        self.apply(transition)
        return transition

    def recover_address(self, reason: str) -> Transition:
        """Send the conversation back to DELIVERY_ADDRESS for a missing house number."""
        transition = Transition(
            self.current_state,
            OrderState.DELIVERY_ADDRESS,
            TransitionTrigger.ADDRESS_INCOMPLETE,
            reason,
        )
        self.apply(transition)
        return transition

    def apply(self, transition: Transition) -> OrderState:
        """
        Execute a state transition.

        Args:
            transition: The proposed transition.

        Returns:
            The new conversation state.

        Raises:
            InvalidTransitionError: If the transition is stale, leaves the
                terminal state, or moves backward outside the recovery edge.
        """
        current = self.current_state
        target = transition.to_state

        if transition.from_state != current:
            raise InvalidTransitionError(
                f"Transition from '{transition.from_state.name}' proposed while in '{current.name}'"
            )
        if current == OrderState.ORDER_COMMITTED and target != current:
            raise InvalidTransitionError(
                f"Conversation is committed; cannot move to '{target.name}'"
            )
        is_recovery = (
            transition.trigger == TransitionTrigger.ADDRESS_INCOMPLETE
            and target == OrderState.DELIVERY_ADDRESS
        )
        if target < current and not is_recovery:
            raise InvalidTransitionError(
                f"No backward transition from '{current.name}' to '{target.name}' "
                f"with trigger '{transition.trigger.value}'"
            )
        if target == OrderState.ORDER_COMMITTED and not self._conversation.committed_order_ref:
            raise InvalidTransitionError("Cannot enter ORDER_COMMITTED without an order reference")

        if target == current:
            return current

        now = datetime.now(timezone.utc)
        self._conversation.state = int(target)
        self._conversation.state_entered_at = now
        if target == OrderState.PAYMENT_METHOD:
            self._conversation.payment_prompted = False
        self._history.append(StateEntry(state=target, entered_at=now, trigger=transition.trigger))

        logger.debug(
            "State transition: %s -> %s (trigger: %s)",
            current.name, target.name, transition.trigger.value,
        )
        return target

    def mark_committed(self, order_ref: str) -> Transition:
        """Record the committed order reference and enter the terminal state."""
        if self._conversation.committed_order_ref:
            raise InvalidTransitionError(
                f"Order already committed as {self._conversation.committed_order_ref}"
            )
        self._conversation.committed_order_ref = order_ref
        return self.advance_to(
            OrderState.ORDER_COMMITTED, TransitionTrigger.ORDER_CONFIRMED, "order committed"
        )

    def check_invariants(self) -> list[str]:
        """Log and return invariant violations. Violations are reported, not repaired."""
        violations = []
        if self.current_state == OrderState.ORDER_COMMITTED and not self._conversation.committed_order_ref:
            violations.append("terminal state without committed order reference")
        for violation in violations:
            logger.error(
                "Invariant violation in conversation %s: %s", self._conversation.id, violation
            )
        return violations

    def get_history(self) -> list[StateEntry]:
        """Return the state history recorded by this controller."""
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of state names visited."""
        return [entry.state.name for entry in self._history]

    def is_terminal(self) -> bool:
        """Check if the conversation has reached the terminal state."""
        return self.current_state == OrderState.ORDER_COMMITTED
