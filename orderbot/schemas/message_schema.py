"""Inbound and outbound message models exchanged with channel adapters."""

from typing import Optional

from pydantic import BaseModel, Field

SUPPORTED_MEDIA_KINDS = frozenset({"text", "audio", "ptt"})


class InboundMessage(BaseModel):
    """One customer message as delivered by a channel adapter."""

    identity: str
    text: str = ""
    is_voice_transcript: bool = False
    media_kind: str = "text"

    @property
    def is_supported_media(self) -> bool:
        return self.media_kind in SUPPORTED_MEDIA_KINDS


class ImageAttachment(BaseModel):
    id: str
    url: str
    caption: str = ""


class OutboundResponse(BaseModel):
    """Everything the adapter needs to deliver for one turn."""

    success: bool = True
    text: Optional[str] = None
    voice_asset_ref: Optional[str] = None
    image_asset_ref: Optional[str] = None
    image_caption: Optional[str] = None
    all_images: list[ImageAttachment] = Field(default_factory=list)
    state: Optional[int] = None
