"""
Catalog image resolution for IMAGE blocks.

Three identifier shapes are understood:

- ``cardapio`` / ``menu``: the configured menu image.
- ``idA+idB``: a split pizza, composed from A's left half over B's right half.
- anything else: a single item, looked up by exact identifier, then by the
  flavor named in the identifier's trailing segment, then by a broad match
  on identifier or name.

A miss returns None; callers turn that into a text reply.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from orderbot.prompts.prompt_templates import composite_caption, item_caption
from orderbot.prompts.system_prompts import MENU_IMAGE_CAPTION
from orderbot.schemas.catalog_schema import BotConfiguration, MenuItem
from orderbot.tools.imaging import ImageFetcher, compose_split_image
from orderbot.tools.store import DocumentStore

logger = logging.getLogger(__name__)

MENU_IMAGE_IDS = frozenset({"cardapio", "menu"})
APPROXIMATE = "aproximada"
PARTIAL = "parcial"


@dataclass(frozen=True)
class ResolvedImage:
    """An image ready for delivery."""
    id: str
    url: str
    caption: str
    is_menu: bool = False
    is_dessert: bool = False
    fallback: Optional[str] = None


def flavor_term(image_id: str) -> str:
    """Flavor named by an identifier's trailing segment: "pizza-salgada_pizza-amazonas" -> "amazonas"."""
    tail = image_id.rsplit("_", 1)[-1]
    if tail.startswith("pizza-"):
        tail = tail[len("pizza-"):]
    return tail.replace("-", " ").strip()


class CatalogImageResolver:
    """Resolves IMAGE block identifiers against the catalog."""

    def __init__(
        self,
        store: DocumentStore,
        fetcher: ImageFetcher,
        composer: Callable[[bytes, bytes], str] = compose_split_image,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._composer = composer

    async def resolve(
        self, image_id: str, bot_config: Optional[BotConfiguration] = None
    ) -> Optional[ResolvedImage]:
        image_id = image_id.strip()
        if image_id.lower() in MENU_IMAGE_IDS:
            return self.resolve_menu(image_id, bot_config)
        if "+" in image_id:
            first_id, _, second_id = image_id.partition("+")
            return await self.resolve_composite(image_id, first_id.strip(), second_id.strip())
        return await self.resolve_single(image_id)

    def resolve_menu(
        self, image_id: str, bot_config: Optional[BotConfiguration]
    ) -> Optional[ResolvedImage]:
        if bot_config is None or not bot_config.menu_image:
            logger.warning("Menu image requested but none is configured")
            return None
        return ResolvedImage(
            id=image_id,
            url=bot_config.menu_image,
            caption=bot_config.menu_image_caption or MENU_IMAGE_CAPTION,
            is_menu=True,
        )

    async def find_item(self, image_id: str, require_image: bool = True) -> Optional[MenuItem]:
        """Item lookup chain. With ``require_image``, only items with a general asset count."""
        candidates: list[MenuItem] = []

        exact = await self._store.get_available_item(image_id)
        if exact is not None:
            candidates.append(exact)

        term = flavor_term(image_id)
        if term and term != image_id:
            candidates.extend(await self._store.search_available_items(term))

        candidates.extend(await self._store.search_available_items(image_id))

        for item in candidates:
            if not require_image or item.image_general:
                return item
        return None

    async def resolve_single(self, image_id: str) -> Optional[ResolvedImage]:
        item = await self.find_item(image_id)
        if item is None:
            logger.warning("No image found for '%s'", image_id)
            return None
        return ResolvedImage(
            id=image_id,
            url=item.image_general or "",
            caption=item_caption(item),
            is_dessert=item.is_dessert or "pizza-doce" in image_id,
        )

    async def resolve_composite(
        self, image_id: str, first_id: str, second_id: str
    ) -> Optional[ResolvedImage]:
        first = await self.find_item(first_id, require_image=False)
        second = await self.find_item(second_id, require_image=False)
        if first is None or second is None:
            logger.warning("Split image '%s' references an unknown item", image_id)
            return None

        left, right = first.image_left_half, second.image_right_half
        if left and right:
            try:
                url = await self._compose(right, left)
                return ResolvedImage(id=image_id, url=url, caption=composite_caption(first, second))
            except Exception as e:
                logger.error("Split image composition failed for '%s': %s", image_id, e, exc_info=True)
                return ResolvedImage(
                    id=image_id,
                    url=right,
                    caption=composite_caption(first, second, PARTIAL),
                    fallback=PARTIAL,
                )

        url = (
            first.image_general
            or second.image_general
            or left
            or right
        )
        if not url:
            logger.warning("Split image '%s' has no usable asset", image_id)
            return None
        logger.info("Split image '%s' missing a half asset, using general image", image_id)
        return ResolvedImage(
            id=image_id,
            url=url,
            caption=composite_caption(first, second, APPROXIMATE),
            fallback=APPROXIMATE,
        )

    async def _compose(self, base_url: str, overlay_url: str) -> str:
        base = await self._fetcher.fetch(base_url)
        overlay = await self._fetcher.fetch(overlay_url)
        return await asyncio.to_thread(self._composer, base, overlay)
