"""Application configuration for the signaling service."""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:8080",
    ])

    jwt_secret: str = Field(default="video-call-app-secret-key")
    jwt_algorithm: str = Field(default="HS256")
    token_ttl_hours: int = Field(default=24, ge=1)
    password_hash_rounds: int = Field(default=10, ge=4, le=31)

    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    websocket_path: str = Field(default="/ws")

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
