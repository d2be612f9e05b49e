from orderbot.conversation.guardrails import GuardrailPipeline
from orderbot.conversation.state_machine import (
    ConversationStateMachine,
    OrderState,
    TransitionTrigger,
)
from orderbot.conversation.tagged_response import ParsedResponse, parse_tagged_response

__all__ = [
    "ConversationStateMachine",
    "OrderState",
    "TransitionTrigger",
    "GuardrailPipeline",
    "ParsedResponse",
    "parse_tagged_response",
]
