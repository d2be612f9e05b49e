"""
Time-boxed cache of the catalog context used to build prompts.

Holds the bot configuration, the available menu items (without image
payloads), the active payment methods and the story text. The cache is
refreshed when empty or older than its TTL. Concurrent refreshes are
tolerated: the data is idempotent to recompute, so the last write wins.

Usage:
    cache = ContextCache(store, ttl_seconds=300)
    context = await cache.get()
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from orderbot.schemas.catalog_schema import CachedContext
from orderbot.tools.store import DocumentStore

logger = logging.getLogger(__name__)


class ContextCache:
    """Per-engine catalog cache with stale-check-then-refresh semantics."""

    def __init__(
        self,
        store: DocumentStore,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._context: Optional[CachedContext] = None
        self._loaded_at: Optional[float] = None

    def is_stale(self) -> bool:
        if self._context is None or self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at > self._ttl

    async def get(self) -> CachedContext:
        """Return the cached context, refreshing it first when stale."""
        if not self.is_stale():
            logger.debug("Context cache hit")
            return self._context  # type: ignore[return-value]
        return await self.refresh()

    async def refresh(self) -> CachedContext:
        """Reload from the store. On failure, return an empty context without caching it."""
        started = self._clock()
        try:
            bot_config = await self._store.get_bot_configuration()
            menu_items = await self._store.list_available_menu_items()
            payment_methods = await self._store.list_active_payment_methods()
            story = await self._store.get_story()
        except Exception:
            logger.error("Failed to load catalog context", exc_info=True)
            return CachedContext()

        context = CachedContext(
            bot_config=bot_config,
            menu_items=[item.without_images() for item in menu_items],
            payment_methods=payment_methods,
            story=story,
            loaded_at=datetime.now(timezone.utc),
        )
        self._context = context
        self._loaded_at = self._clock()
        logger.debug(
            "Context cache refreshed: %d menu items, %d payment methods (%.3fs)",
            len(context.menu_items), len(context.payment_methods), self._loaded_at - started,
        )
        return context

    def invalidate(self) -> None:
        self._context = None
        self._loaded_at = None
