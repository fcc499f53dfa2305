"""Runtime configuration for the Lumen relay."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``LUMEN_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(
        env_prefix="LUMEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["json", "console"] = Field(default="json")
    service_name: str = Field(default="lumen-relay")

    # Coalescing
    debounce_ms: int = Field(default=3000, gt=0, description="Quiet period before a buffer flush")
    poll_interval_ms: int = Field(default=3000, gt=0, description="Tick of the fixed-interval poller")
    dedup_capacity: int = Field(default=1000, gt=0, description="Most-recently-seen message ids kept")

    # Orchestration
    max_iterations: int = Field(default=5, ge=1)
    command_timeout_ms: int = Field(default=30000, gt=0)
    approval_timeout_s: Optional[float] = Field(
        default=None, description="How long to wait for a command approval; None waits indefinitely"
    )
    auto_approve_default: bool = False
    redaction_mode: Literal["fail_open", "fail_closed"] = "fail_open"
    verify_fulfillment: bool = False

    # Context
    context_window: int = Field(default=20, gt=0, description="Interactions rendered into each snapshot")
    history_limit: int = Field(default=100, gt=0, description="Interactions retained per identity")

    # Per-identity user settings
    settings_capacity: int = Field(default=1000, gt=0)
    settings_ttl_s: int = Field(default=86400, gt=0)

    # Reasoning service
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None
    openai_timeout_s: float = 60.0

    # Tracing
    langfuse_enabled: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
