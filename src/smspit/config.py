from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field

_TRUE_VALUES = {"true", "1", "yes"}


class ConfigError(RuntimeError):
    """Raised when an SMSPIT_* environment variable cannot be parsed."""


def _env(key: str, default: str) -> str:
    return os.getenv(key) or default


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {key}='{raw}'. Must be an integer.") from None


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Invalid {key}='{raw}'. Must be a number of seconds.") from None


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if not raw:
        return default
    return raw.strip().lower() in _TRUE_VALUES


class Settings(BaseModel):
    # Env-derived defaults go through the same constraints as explicit values
    model_config = ConfigDict(validate_default=True)

    # Interface both servers bind to
    host: str = Field(default_factory=lambda: _env("SMSPIT_HOST", "0.0.0.0"))

    # Web UI + query API + WebSocket
    web_port: int = Field(default_factory=lambda: _env_int("SMSPIT_WEB_PORT", 8080))

    # Capture endpoints (what applications under test post to)
    api_port: int = Field(default_factory=lambda: _env_int("SMSPIT_API_PORT", 9080))

    # Oldest messages are evicted once the store holds this many
    max_messages: int = Field(
        default_factory=lambda: _env_int("SMSPIT_MAX_MESSAGES", 10000),
        ge=1,
    )

    # Exposes POST /2010-04-01/Accounts/{sid}/Messages.json
    twilio_compat: bool = Field(default_factory=lambda: _env_bool("SMSPIT_TWILIO_COMPAT", False))

    # Shared secret; None disables the Authorization check entirely
    auth_token: str | None = Field(default_factory=lambda: os.getenv("SMSPIT_AUTH_TOKEN") or None)

    cors_origins: str = Field(default_factory=lambda: _env("SMSPIT_CORS_ORIGINS", "*"))
    log_level: str = Field(default_factory=lambda: _env("SMSPIT_LOG_LEVEL", "INFO").upper())

    # How long in-flight requests get after SIGINT/SIGTERM
    shutdown_grace_seconds: float = Field(
        default_factory=lambda: _env_float("SMSPIT_SHUTDOWN_GRACE_SECONDS", 5.0),
        ge=0,
    )

    # Undelivered events a WebSocket subscriber may lag behind before it is dropped
    subscriber_queue_size: int = Field(
        default_factory=lambda: _env_int("SMSPIT_SUBSCRIBER_QUEUE_SIZE", 256),
        ge=1,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
