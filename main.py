"""
Order bot entry point.

Serves the HTTP adapter the chat channel bridge posts messages to, or runs
the offline console demo for development.

Usage:
    HTTP server:  python main.py serve
    Console mode: python main.py console
"""

import logging
import sys

from orderbot.config import settings

logger = logging.getLogger(__name__)


def _build_app():
    """Build the FastAPI app around a fully wired orchestrator."""
    from orderbot.adapters.http_api import create_app
    from orderbot.agents.orchestrator import create_orchestrator

    if not settings.services.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; model and speech calls will fail")
    return create_app(create_orchestrator(settings), media_dir=settings.services.media_dir)


def _run_http_mode() -> None:
    """Start the HTTP adapter (requires an OpenAI API key)."""
    import uvicorn

    app = _build_app()
    logger.info(
        "Serving %s on %s:%d", settings.store.name,
        settings.services.http_host, settings.services.http_port,
    )
    uvicorn.run(
        app,
        host=settings.services.http_host,
        port=settings.services.http_port,
        log_level=settings.log_level.lower(),
    )


def _run_console_mode() -> None:
    """Start the offline console demo (no API keys required)."""
    import asyncio

    from console_demo import ConsoleSession

    session = ConsoleSession()
    asyncio.run(session.run())


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode()
    else:
        _run_http_mode()
