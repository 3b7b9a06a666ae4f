# noqa: E402

from __future__ import annotations

import typing as t
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict  # noqa: E402

# For development mode it's more convenient to be able to modify the .env file directly and override the environment.
# This should go before the `BaseSettings` instantiation
# .parents[2] goes: settings.py -> agentflow/ -> src/ -> project_root/
_DOT_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
loaded = load_dotenv(_DOT_ENV_PATH, override=True)


class Settings(BaseSettings):
    """Centralized settings for the agentflow engine.

    All runtime limits and API keys should be accessed through get_settings().
    Components accept explicit overrides and fall back to these values.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Reasoner (OpenAI adapter)
    openai_api_key: str = ""
    reasoner_model: str = "gpt-4o-mini"
    reasoner_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    # ToolEngine
    tool_timeout: float = Field(default=30.0, gt=0, description="Per-call seconds")
    parallel_concurrency: int = Field(default=5, ge=1)
    parallel_timeout: float = Field(default=60.0, gt=0, description="Batch seconds")
    tool_max_retries: int = Field(default=0, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=5.0, ge=0)

    # PlanExecutor / planners
    max_step_retries: int = Field(default=1, ge=0)
    max_replans: int = Field(default=3, ge=0)
    max_signal_replans: int = Field(
        default=1, ge=0, description="Replans a plan's own signals may trigger"
    )
    max_iterations: int = Field(default=10, ge=1)

    # Development
    development_mode: bool = False


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the current settings instance.

    Initializes settings from environment variables if not already configured.
    """
    if _settings is None:
        configure_settings()
    return t.cast(Settings, _settings)


def configure_settings(**kwargs: t.Any) -> None:
    """Configure settings with optional overrides.

    Args:
        **kwargs: Optional setting overrides (e.g., parallel_concurrency=10)
    """
    global _settings
    _settings = Settings(
        **kwargs
    )  # pyright: ignore[reportCallIssue, reportArgumentType]
