"""Relay configuration, read once from the environment at startup."""

from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fixed paths on the relay
CALLBACK_PATH = "/api/webhook"
CHANNEL_PATH = "/ws"

# Header carrying the base64 HMAC-SHA256 of the raw body
SIGNATURE_HEADER = "X-Shopify-Hmac-SHA256"

DEFAULT_BACKEND_URL = "http://localhost:3001"


class Settings(BaseSettings):
    """Environment-driven settings for the relay."""

    shopify_shared_secret: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("SHOPIFY_SHARED_SECRET", "HOOKRELAY_SHOPIFY_SHARED_SECRET"),
    )
    host: str = Field(default="0.0.0.0", validation_alias=AliasChoices("HOST", "HOOKRELAY_HOST"))
    port: int = Field(default=3001, validation_alias=AliasChoices("PORT", "HOOKRELAY_PORT"))
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]
    subscriber_queue_size: int = Field(default=200, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="HOOKRELAY_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def secret_bytes(self) -> bytes:
        return self.shopify_shared_secret.get_secret_value().encode("utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    return Settings()
