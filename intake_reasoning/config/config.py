"""
Host configuration with environment-based settings.

The engine itself never reads these settings; the embedding service loads
them once and hands `settings.engine` to the engine functions explicitly.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from intake_reasoning.config.engine_config import EngineSettings


class Settings(BaseSettings):
    """
    Settings loaded from environment variables.

    Engine tunables are nested under `engine` and can be overridden with
    `ENGINE__<FIELD>` variables (e.g. `ENGINE__MAX_NEXT_QUESTIONS=2`).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = Field(default="Intake Reasoning Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format"
    )

    # Engine
    engine: EngineSettings = Field(
        default_factory=EngineSettings,
        description="Deterministic engine tunables"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached host settings.

    Settings are loaded once and cached for the process lifetime.
    """
    return Settings()
