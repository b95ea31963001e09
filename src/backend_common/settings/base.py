"""Base settings shared by backend services."""
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseServiceSettings(BaseSettings):
    """Settings every aiohttp service needs (server, CORS, database pool)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "backend-service"
    env: Literal["development", "staging", "production"] = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    cors_allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:8080"]
    )

    db_pool_size: int = 20
