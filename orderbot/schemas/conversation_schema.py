"""Conversation data models: the per-identity dialogue record and its messages."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from orderbot.schemas.order_schema import OrderPayload


VOICE_TRANSCRIPT_PREFIX = "[Áudio]: "


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    BOT = "bot"


class Message(BaseModel):
    """A single message in the dialogue."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class AddressComponents(BaseModel):
    street: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    cep: str = ""


class AddressData(BaseModel):
    """Address resolved from a postal code lookup."""

    formatted_address: str
    components: AddressComponents = Field(default_factory=AddressComponents)


class Conversation(BaseModel):
    """
    Dialogue record for one customer identity.

    A conversation is never deleted. Once it reaches the terminal state, or
    goes stale, the next inbound message starts a new one for the same
    identity.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    identity: str
    state: int = Field(default=0, ge=0, le=7)
    messages: list[Message] = Field(default_factory=list)
    address_data: Optional[AddressData] = None
    pending_order: Optional[OrderPayload] = None
    draft_order: Optional[OrderPayload] = None
    committed_order_ref: Optional[str] = None
    confirmation_text: Optional[str] = None
    payment_prompted: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    state_entered_at: datetime = Field(default_factory=_utcnow)
    duration_minutes: int = 0

    def add_message(self, role: Role, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        return message

    def add_user_message(self, text: str, is_voice_transcript: bool = False) -> Message:
        """Record a customer turn; transcribed voice is marked so the model knows it was spoken."""
        if is_voice_transcript:
            text = VOICE_TRANSCRIPT_PREFIX + text
        return self.add_message(Role.USER, text)

    def user_texts(self) -> list[str]:
        """Customer messages as typed or spoken, without the voice marker."""
        return [
            m.content.removeprefix(VOICE_TRANSCRIPT_PREFIX)
            for m in self.messages
            if m.role == Role.USER
        ]

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or _utcnow()
        return (now - self.started_at).total_seconds() / 3600

    def refresh_duration(self, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        self.duration_minutes = int((now - self.started_at).total_seconds() // 60)
