"""
Centralized configuration with environment variable overrides.

Store-facing texts, model settings, timeouts and cache lifetimes are all
configurable here. Services receive the values they need through their
constructors; nothing below the orchestrator reads the environment.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class StoreConfig:
    """Store-specific texts and delivery area."""

    name: str = os.getenv("STORE_NAME", "Pizzaria Paulistana")
    welcome_message: str = os.getenv(
        "WELCOME_MESSAGE",
        "Olá! Sou o atendente virtual da pizzaria. Como posso ajudar?",
    )
    unsupported_media_message: str = os.getenv(
        "UNSUPPORTED_MEDIA_MESSAGE",
        "Desculpe, só consigo processar mensagens de texto ou áudio.",
    )
    currency_symbol: str = os.getenv("CURRENCY_SYMBOL", "R$")
    delivery_city: str = os.getenv("DELIVERY_CITY", "São Paulo")
    delivery_state: str = os.getenv("DELIVERY_STATE", "SP")
    delivery_minutes: int = _safe_int("DELIVERY_MINUTES", "50")


@dataclass(frozen=True)
class ModelConfig:
    """Language model and speech synthesis settings."""

    llm_model: str = os.getenv("LLM_MODEL", "gpt-4-turbo")
    llm_temperature: float = _safe_float("LLM_TEMPERATURE", "0.7")
    llm_max_tokens: int = _safe_int("LLM_MAX_TOKENS", "1000")
    history_window: int = _safe_int("HISTORY_WINDOW", "10")
    tts_model: str = os.getenv("TTS_MODEL", "tts-1")
    tts_voice: str = os.getenv("TTS_VOICE", "ash")


@dataclass(frozen=True)
class ConversationConfig:
    """Lifetimes and timeouts governing a single conversation turn."""

    context_cache_ttl_sec: float = _safe_float("CONTEXT_CACHE_TTL", "300")
    stale_conversation_hours: float = _safe_float("STALE_CONVERSATION_HOURS", "3")
    external_timeout_sec: float = _safe_float("EXTERNAL_TIMEOUT", "30")
    slow_turn_threshold_sec: float = _safe_float("SLOW_TURN_THRESHOLD", "5.0")
    staged_order_ttl_sec: float = _safe_float("STAGED_ORDER_TTL", "10800")


@dataclass(frozen=True)
class ServiceConfig:
    """Endpoints and credentials of external collaborators."""

    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    cep_api_url: str = os.getenv("CEP_API_URL", "https://brasilapi.com.br/api/cep/v2")
    media_dir: str = os.getenv("MEDIA_DIR", "public/media")
    media_url_prefix: str = os.getenv("MEDIA_URL_PREFIX", "/api/media")
    http_host: str = os.getenv("HTTP_HOST", "0.0.0.0")
    http_port: int = _safe_int("HTTP_PORT", "3000")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    store: StoreConfig = field(default_factory=StoreConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not 0.0 <= config.model.llm_temperature <= 2.0:
        raise ValueError(
            f"LLM_TEMPERATURE must be between 0.0 and 2.0, got {config.model.llm_temperature}"
        )
    if config.model.llm_max_tokens < 1:
        raise ValueError(
            f"LLM_MAX_TOKENS must be >= 1, got {config.model.llm_max_tokens}"
        )
    if config.model.history_window < 1:
        raise ValueError(
            f"HISTORY_WINDOW must be >= 1, got {config.model.history_window}"
        )
    if config.store.delivery_minutes < 1:
        raise ValueError(
            f"DELIVERY_MINUTES must be >= 1, got {config.store.delivery_minutes}"
        )

    for name, value in [
        ("CONTEXT_CACHE_TTL", config.conversation.context_cache_ttl_sec),
        ("STALE_CONVERSATION_HOURS", config.conversation.stale_conversation_hours),
        ("EXTERNAL_TIMEOUT", config.conversation.external_timeout_sec),
        ("SLOW_TURN_THRESHOLD", config.conversation.slow_turn_threshold_sec),
        ("STAGED_ORDER_TTL", config.conversation.staged_order_ttl_sec),
    ]:
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")

    if not 1 <= config.services.http_port <= 65535:
        raise ValueError(
            f"HTTP_PORT must be between 1 and 65535, got {config.services.http_port}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.store.name)
    return config


# Singleton instance
settings = load_config()
