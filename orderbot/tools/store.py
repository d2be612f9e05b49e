"""
Document store abstraction for conversations, catalog and orders.

The ordering engine only depends on the ``DocumentStore`` protocol; the
query mechanics of the real database are out of scope. ``InMemoryStore``
is the default implementation used by the console adapter and the tests.

In production, this would be backed by a document database holding the
same collections (conversations, menu items, payment methods, bot
configuration, story, orders).
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from orderbot.schemas.catalog_schema import BotConfiguration, MenuItem, PaymentMethod, StoryText
from orderbot.schemas.conversation_schema import Conversation
from orderbot.schemas.order_schema import Order
from orderbot.utils import fold

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for the persistence queries the engine needs."""

    async def latest_conversation(self, identity: str) -> Optional[Conversation]:
        """Most recently started conversation for an identity."""
        ...

    async def create_conversation(self, identity: str) -> Conversation:
        ...

    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    async def get_bot_configuration(self) -> Optional[BotConfiguration]:
        ...

    async def get_story(self) -> Optional[StoryText]:
        ...

    async def list_available_menu_items(self) -> list[MenuItem]:
        ...

    async def list_active_payment_methods(self) -> list[PaymentMethod]:
        ...

    async def get_available_item(self, identifier: str) -> Optional[MenuItem]:
        """Exact identifier lookup restricted to available items."""
        ...

    async def search_available_items(self, term: str) -> list[MenuItem]:
        """Accent- and case-insensitive substring match on identifier or name."""
        ...

    async def insert_order(self, order: Order) -> None:
        ...

    async def get_order(self, ref: str) -> Optional[Order]:
        ...

    async def latest_order(self, identity: str) -> Optional[Order]:
        ...

    async def list_orders(self) -> list[Order]:
        ...


class InMemoryStore:
    """
    Dict-backed ``DocumentStore``.

    Reads return deep copies so callers must save explicitly, the same
    contract a database-backed store has.
    """

    def __init__(
        self,
        menu_items: Optional[list[MenuItem]] = None,
        payment_methods: Optional[list[PaymentMethod]] = None,
        bot_config: Optional[BotConfiguration] = None,
        story: Optional[StoryText] = None,
    ) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._orders: dict[str, Order] = {}
        self._menu: dict[str, MenuItem] = {}
        self._payments: list[PaymentMethod] = list(payment_methods or [])
        self._bot_config = bot_config
        self._story = story
        for item in menu_items or []:
            self.add_menu_item(item)

    # ------------------------------------------------------------------ #
    # Seeding
    # ------------------------------------------------------------------ #

    def add_menu_item(self, item: MenuItem) -> None:
        if item.identifier in self._menu:
            raise ValueError(f"Duplicate menu identifier: {item.identifier}")
        self._menu[item.identifier] = item

    def add_payment_method(self, method: PaymentMethod) -> None:
        self._payments.append(method)

    def set_bot_configuration(self, config: BotConfiguration) -> None:
        self._bot_config = config

    def set_story(self, story: StoryText) -> None:
        self._story = story

    # ------------------------------------------------------------------ #
    # Conversations
    # ------------------------------------------------------------------ #

    async def latest_conversation(self, identity: str) -> Optional[Conversation]:
        # dicts keep insertion order, so the last match is the newest
        candidates = [c for c in self._conversations.values() if c.identity == identity]
        if not candidates:
            return None
        return candidates[-1].model_copy(deep=True)

    async def create_conversation(self, identity: str) -> Conversation:
        conversation = Conversation(identity=identity)
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        logger.debug("Conversation %s created for %s", conversation.id, identity)
        return conversation

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    def conversations_for(self, identity: str) -> list[Conversation]:
        """All conversations of an identity, oldest first."""
        return [c for c in self._conversations.values() if c.identity == identity]

    # ------------------------------------------------------------------ #
    # Catalog
    # ------------------------------------------------------------------ #

    async def get_bot_configuration(self) -> Optional[BotConfiguration]:
        return self._bot_config

    async def get_story(self) -> Optional[StoryText]:
        return self._story

    async def list_available_menu_items(self) -> list[MenuItem]:
        return [item for item in self._menu.values() if item.available]

    async def list_active_payment_methods(self) -> list[PaymentMethod]:
        return [method for method in self._payments if method.active]

    async def get_available_item(self, identifier: str) -> Optional[MenuItem]:
        item = self._menu.get(identifier)
        if item is None or not item.available:
            return None
        return item

    async def search_available_items(self, term: str) -> list[MenuItem]:
        needle = fold(term).strip()
        if not needle:
            return []
        return [
            item
            for item in self._menu.values()
            if item.available and (needle in fold(item.identifier) or needle in fold(item.name))
        ]

    # ------------------------------------------------------------------ #
    # Orders
    # ------------------------------------------------------------------ #

    async def insert_order(self, order: Order) -> None:
        if order.ref in self._orders:
            raise ValueError(f"Order {order.ref} already exists")
        self._orders[order.ref] = order
        logger.info("Order stored: %s (total %.2f)", order.ref, order.total_value)

    async def get_order(self, ref: str) -> Optional[Order]:
        return self._orders.get(ref)

    async def latest_order(self, identity: str) -> Optional[Order]:
        orders = [o for o in self._orders.values() if o.identity == identity]
        if not orders:
            return None
        return orders[-1]

    async def list_orders(self) -> list[Order]:
        return list(self._orders.values())

    def reset(self) -> None:
        """Clear conversations and orders. Used by test fixtures for isolation."""
        self._conversations.clear()
        self._orders.clear()
