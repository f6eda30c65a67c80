"""Application settings and configuration."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration. Exactly one store and one provider are built.

    Every field reads ``GYB_<FIELD>`` from the environment (or ``.env``);
    the provider API keys keep their vendor names.
    """

    model_config = SettingsConfigDict(
        env_prefix="GYB_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # --- Storage ---
    store_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./gyb_chat.db"

    # --- Completion service ---
    llm_provider: Literal["openai", "gemini"] = "openai"
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    gemini_api_key: Optional[str] = Field(default=None, validation_alias="GEMINI_API_KEY")
    text_model: str = "gpt-4-turbo-preview"
    vision_model: str = "gpt-4o"
    document_model: str = "gpt-4-turbo-preview"
    gemini_model: str = "gemini-1.5-flash"
    max_tokens: int = 500
    temperature: float = 0.7

    # Document analysis polling bounds
    poll_interval: float = 1.0
    poll_max_wait: float = 120.0
    poll_max_attempts: int = 120

    # Must exceed poll_max_wait so a document turn can finish
    queue_timeout: float = 180.0
    max_concurrent: int = 10

    # --- HTTP surface ---
    rate_limit: int = 50
    rate_window: int = 60

    default_persona: str = "Mr.GYB AI"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
