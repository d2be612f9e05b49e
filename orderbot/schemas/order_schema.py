"""Order data models.

``OrderPayload`` is the normalized form of the order block emitted by the
language model; ``Order`` is the persisted, immutable record created on commit.
The Portuguese wire keys (``nome``, ``quantidade``, ``preco``) are accepted as
aliases so payloads validate straight from the model output.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PRICE_NOISE_RE = re.compile(r"[^\d,.\-]")


class OrderItem(BaseModel):
    """A single order line."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="nome")
    quantity: int = Field(default=1, ge=1, alias="quantidade")
    price: float = Field(default=0.0, ge=0, alias="preco")

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_quantity(cls, value: Any) -> Any:
        return 1 if value in (None, "", 0) else value

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, value: Any) -> Any:
        """Accept "R$ 45,90" style strings alongside plain numbers."""
        if value is None or value == "":
            return 0.0
        if isinstance(value, str):
            cleaned = _PRICE_NOISE_RE.sub("", value)
            if "," in cleaned:
                cleaned = cleaned.replace(".", "").replace(",", ".")
            return cleaned or 0.0
        return value

    @property
    def subtotal(self) -> float:
        return self.price * self.quantity


class OrderPayload(BaseModel):
    """Normalized staged order, before it is committed."""

    items: list[OrderItem] = Field(default_factory=list)
    address: str = ""
    payment_method: str = ""

    @property
    def total_value(self) -> float:
        """Sum of price x quantity, always recomputed."""
        return round(sum(item.subtotal for item in self.items), 2)

    def missing_fields(self) -> list[str]:
        """Names of the required fields that are empty."""
        missing = []
        if not self.items:
            missing.append("items")
        if not self.address.strip():
            missing.append("address")
        if not self.payment_method.strip():
            missing.append("payment_method")
        return missing


class Order(BaseModel):
    """A committed order. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    ref: str
    identity: str
    conversation_id: str
    items: list[OrderItem]
    total_value: float = Field(ge=0)
    address: str
    payment_method: str
    status: str = "Confirmado"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    confirmation_text: Optional[str] = None
