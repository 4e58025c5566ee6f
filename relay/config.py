"""Configuration for the relay.

Provides centralized settings with sensible defaults and environment
variable overrides (optionally loaded from a ``.env`` file) for Telegram,
the Supabase store, the reasoning engine, the fallback backends, the
process guard, logging and telemetry.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Task invocations may run multi-tool agent loops; never longer than this.
MAX_TASK_TIMEOUT_SECONDS = 30 * 60


class RelaySettings(BaseSettings):
    """Relay settings.

    Environment variables are the upper-cased field names, e.g.
    TELEGRAM_BOT_TOKEN, SUPABASE_URL, CLAUDE_PATH, LOCK_STALE_SECONDS.
    The Supabase key is read from SUPABASE_SERVICE_ROLE_KEY, falling back
    to SUPABASE_ANON_KEY.
    """

    # Telegram
    telegram_bot_token: str = Field(default="", description="Bot API token")
    telegram_user_id: str = Field(
        default="", description="Only messages from this user id are served"
    )
    user_name: str = Field(default="", description="Display name used in prompts")
    user_timezone: str = Field(default="UTC", description="IANA timezone name")

    # Store
    supabase_url: str = Field(default="")
    supabase_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY", "supabase_key"
        ),
    )
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Reasoning engine
    engine: Literal["cli", "api"] = Field(
        default="cli", description="Claude CLI subprocess or Anthropic API"
    )
    claude_path: str = Field(default="claude")
    claude_timeout_seconds: int = Field(
        default=300, gt=0, description="Timeout for a plain chat invocation"
    )
    task_timeout_seconds: int = Field(
        default=MAX_TASK_TIMEOUT_SECONDS,
        gt=0,
        le=MAX_TASK_TIMEOUT_SECONDS,
        description="Timeout for a task invocation",
    )
    claude_max_turns: int = Field(default=25, gt=0)
    allowed_tools: list[str] = Field(default_factory=list)
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929")
    anthropic_max_tokens: int = Field(default=4096, gt=0)
    anthropic_max_iterations: int = Field(default=15, gt=0)

    # Fallback backends
    openrouter_api_key: str = Field(default="")
    openrouter_model: str = Field(default="moonshotai/kimi-k2.5")
    openrouter_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions"
    )
    ollama_url: str = Field(default="http://localhost:11434")
    ollama_model: str = Field(default="qwen3-coder")
    fallback_timeout_seconds: float = Field(default=60.0, gt=0)

    # Process guard
    lock_path: Path = Field(default=Path("data/relay.lock"))
    lock_stale_seconds: int = Field(
        default=90, gt=0, description="Heartbeat age after which a lock is abandoned"
    )
    heartbeat_interval_seconds: int = Field(default=60, gt=0)

    # Async tasks
    stale_task_threshold_seconds: int = Field(
        default=2 * 60 * 60, gt=0, description="Age before a paused task is reminded"
    )
    reminder_check_interval_seconds: int = Field(default=15 * 60, gt=0)

    # Logging / telemetry
    log_level: str = Field(default="INFO")
    log_dir: Path | None = Field(default=None)
    otlp_endpoint: str = Field(default="http://localhost:4317")
    service_name: str = Field(default="relay")

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


@lru_cache
def get_settings() -> RelaySettings:
    """Get relay settings (cached)."""
    return RelaySettings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call re-reads the environment."""
    get_settings.cache_clear()
