"""Catalog data models: menu items, payment methods, bot persona and story."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from orderbot.utils import fold, make_identifier


class MenuItem(BaseModel):
    """A menu entry. Image fields hold URLs (http(s) or data:)."""

    name: str
    description: str = ""
    origin_story: Optional[str] = None
    category: str
    price: float = Field(ge=0)
    available: bool = True
    identifier: str = ""
    image_general: Optional[str] = None
    image_left_half: Optional[str] = None
    image_right_half: Optional[str] = None

    @model_validator(mode="after")
    def _derive_identifier(self) -> "MenuItem":
        if not self.identifier:
            self.identifier = make_identifier(self.category, self.name)
        return self

    @property
    def is_dessert(self) -> bool:
        category = fold(self.category)
        return "doce" in category or "sobremesa" in category

    def without_images(self) -> "MenuItem":
        """Projection used by the context cache."""
        return self.model_copy(
            update={"image_general": None, "image_left_half": None, "image_right_half": None}
        )


class PaymentMethod(BaseModel):
    name: str
    requires_change: bool = False
    active: bool = True


class StoryText(BaseModel):
    title: str = ""
    content: str = ""


class BotConfiguration(BaseModel):
    """Persona and prompt template. Read-only to the ordering engine."""

    name: str = ""
    description: str = ""
    personality: str = ""
    procedure: str = ""
    rules: str = ""
    prompt_template: str = ""
    welcome_message: str = ""
    unsupported_media_message: str = ""
    menu_image: str = ""
    menu_image_caption: str = ""
    confirmation_image: str = ""
    confirmation_image_caption: str = ""


class CachedContext(BaseModel):
    """Time-boxed projection of the catalog used to build prompts."""

    bot_config: Optional[BotConfiguration] = None
    menu_items: list[MenuItem] = Field(default_factory=list)
    payment_methods: list[PaymentMethod] = Field(default_factory=list)
    story: Optional[StoryText] = None
    loaded_at: Optional[datetime] = None
