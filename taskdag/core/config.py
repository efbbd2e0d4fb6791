"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (``TASKDAG_*``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TASKDAG_",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for rotating log files (disabled when unset)",
    )

    # Storage
    store_path: str = Field(
        default=".taskdag/tasks.json",
        description="Path of the JSON task store",
    )
    session_dir: str | None = Field(
        default=".taskdag/sessions",
        description="Directory for resumable session checkpoints",
    )

    # Agent invoker
    anthropic_api_key: SecretStr | None = Field(
        default=None,
        description="Anthropic API key for the agent invoker",
    )
    fast_model: str = Field(
        default="claude-3-5-haiku-latest",
        description="Model used for the fast tier (scope, dag, tasks)",
    )
    capable_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used for the capable tier (goals, challenge)",
    )
    invoker_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single agent invocation in seconds",
    )
    invoker_max_tokens: int = Field(
        default=4000,
        ge=256,
        description="Token budget per agent invocation",
    )

    # Dependency confidence gating
    auto_include_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    review_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    hitl_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Retry protocol
    max_attempts_per_phase: int = Field(default=3, ge=1, le=10)
    max_total_attempts: int = Field(default=10, ge=1, le=50)
    circuit_breaker_threshold: int = Field(default=5, ge=1, le=20)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_cap_seconds: float = Field(default=30.0, ge=0.0)

    # Challenge
    min_challenge_duration_ms: int = Field(
        default=2000,
        ge=0,
        description="Challenge results faster than this are rubber stamps",
    )

    # Structural limits
    max_depth: int = Field(default=3, ge=0, le=3)
    max_siblings: int = Field(default=7, ge=2, le=7)
    max_title_length: int = Field(default=120, ge=10, le=120)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        """Ensure confidence bands are ordered."""
        if not (
            self.hitl_confidence <= self.review_confidence <= self.auto_include_confidence
        ):
            raise ValueError(
                "confidence thresholds must satisfy hitl <= review <= auto_include"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.max_attempts_per_phase
        3
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
