"""
HTTP adapter exposing the orchestrator to the chat channel bridge.

The channel bridge posts every customer message to ``/api/message`` and
delivers the returned text, voice asset and images. Synthesized audio is
served back from ``/api/media/{filename}``.

Usage:
    app = create_app(create_orchestrator(settings), media_dir=settings.services.media_dir)
    uvicorn.run(app, host="0.0.0.0", port=3000)
"""

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel

from orderbot.agents.orchestrator import OrderOrchestrator
from orderbot.schemas.message_schema import InboundMessage, OutboundResponse

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


class AddressCheckIn(BaseModel):
    address: str
    is_query: bool = False


class AddressCheckOut(BaseModel):
    valid: bool
    requires_number: bool = False
    formatted_address: str = ""
    message: str = ""


def create_app(orchestrator: OrderOrchestrator, media_dir: str = "public/media") -> FastAPI:
    """Build the FastAPI application around one orchestrator instance."""
    app = FastAPI(title="Pizza Order Bot API", docs_url=None, redoc_url=None)
    media_root = Path(media_dir).resolve()

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/message", response_model=OutboundResponse)
    async def message(inbound: InboundMessage) -> OutboundResponse:
        if not inbound.identity.strip():
            raise HTTPException(status_code=400, detail="identity is required")
        return await orchestrator.handle_message(inbound)

    @app.post("/api/validate-address", response_model=AddressCheckOut)
    async def validate_address(body: AddressCheckIn) -> AddressCheckOut:
        result = await orchestrator.address_service.validate_address(body.address, body.is_query)
        return AddressCheckOut(
            valid=result.get("valid", False),
            requires_number=result.get("requires_number", False),
            formatted_address=result.get("formatted_address", ""),
            message=result.get("message", ""),
        )

    @app.get("/api/media/{filename}")
    async def media(filename: str) -> FileResponse:
        path = (media_root / filename).resolve()
        if path.parent != media_root or not path.is_file():
            raise HTTPException(status_code=404, detail="Media not found")
        media_type = _MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")
        return FileResponse(path, media_type=media_type, filename=filename)

    logger.info("HTTP adapter ready (media dir: %s)", media_root)
    return app
