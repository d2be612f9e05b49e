"""
Image download and split-pizza compositing.

``compose_split_image`` draws the base image full-frame, then the overlay
scaled to the same extent on top of it. For a split pizza the base is the
second flavor's right-half asset and the overlay is the first flavor's
left-half asset, whose right side is transparent.

Usage:
    fetcher = ImageFetcher()
    base = await fetcher.fetch(second.image_right_half)
    overlay = await fetcher.fetch(first.image_left_half)
    data_url = compose_split_image(base, overlay)
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Optional
from urllib.parse import unquote_to_bytes

import httpx
from PIL import Image, UnidentifiedImageError

from orderbot.errors import ExternalServiceError, ImageCompositionError

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90


def decode_data_url(url: str) -> bytes:
    """Decode a ``data:`` URL into raw bytes."""
    header, sep, payload = url.partition(",")
    if not sep:
        raise ValueError("data URL without payload")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=False)
        except binascii.Error as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
    return unquote_to_bytes(payload)


class ImageFetcher:
    """Fetch image bytes from http(s) or data: URLs."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._timeout = timeout
        self._client = client

    async def fetch(self, url: str) -> bytes:
        if url.startswith("data:"):
            try:
                return decode_data_url(url)
            except ValueError as e:
                raise ExternalServiceError("image", str(e)) from e

        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "image", f"HTTP {e.response.status_code} for {url[:60]}"
            ) from e
        except httpx.RequestError as e:
            raise ExternalServiceError("image", f"download failed for {url[:60]}: {e}") from e
        return response.content


def compose_split_image(base: bytes, overlay: bytes, quality: int = JPEG_QUALITY) -> str:
    """
    Draw ``base`` full-frame, then ``overlay`` stretched to the base extent on top.

    Args:
        base: Encoded bytes of the bottom layer; defines the canvas size.
        overlay: Encoded bytes of the top layer; its alpha channel decides
            what of the base stays visible.
        quality: JPEG quality of the result.

    Returns:
        A ``data:image/jpeg;base64,`` URL.

    Raises:
        ImageCompositionError: If either image cannot be decoded or encoded.
    """
    try:
        with Image.open(BytesIO(base)) as base_image, Image.open(BytesIO(overlay)) as overlay_image:
            canvas = base_image.convert("RGBA")
            top = overlay_image.convert("RGBA")
            if top.size != canvas.size:
                top = top.resize(canvas.size, Image.Resampling.LANCZOS)
            canvas.alpha_composite(top)

            buffer = BytesIO()
            canvas.convert("RGB").save(buffer, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageCompositionError(f"could not compose images: {e}") from e

    logger.debug("Composed split image %dx%d", canvas.width, canvas.height)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"
