"""
Trust Engine - Configuration Settings

Centralized configuration using Pydantic Settings for type-safe
environment variable handling with validation.

Business thresholds (score deltas, windows, tiers) live in
``trust_engine.policy`` so they can be injected per deployment;
this module only carries infrastructure settings.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Example: TASK_BACKEND=redis will set task_backend to "redis"
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application Settings
    # =========================================================================
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    app_debug: bool = Field(
        default=False,
        description="Enable debug mode (SQL echo)"
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # =========================================================================
    # Redis Configuration (durable side-effect queue)
    # =========================================================================
    redis_host: str = Field(
        default="localhost",
        description="Redis server hostname"
    )
    redis_port: int = Field(
        default=6379,
        description="Redis server port"
    )
    redis_db: int = Field(
        default=0,
        description="Redis database number"
    )
    redis_key_prefix: str = Field(
        default="trust:",
        description="Prefix for all Redis keys to avoid conflicts"
    )
    redis_password: str | None = Field(
        default=None,
        description="Redis password (optional)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # =========================================================================
    # PostgreSQL Configuration (ledger store)
    # =========================================================================
    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL server hostname"
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL server port"
    )
    postgres_db: str = Field(
        default="trust_engine",
        description="PostgreSQL database name"
    )
    postgres_user: str = Field(
        default="trust_user",
        description="PostgreSQL username"
    )
    postgres_password: str = Field(
        default="",
        description="PostgreSQL password (required in production)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL connection URL for asyncpg."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================================================================
    # Side-Effect Dispatch
    # =========================================================================
    task_backend: Literal["inprocess", "redis"] = Field(
        default="inprocess",
        description="Where decision side effects are dispatched"
    )
    task_queue_name: str = Field(
        default="side_effects",
        description="Redis list name for queued side effects"
    )
    idempotency_ttl_hours: int = Field(
        default=24,
        description="Retention window (hours) for side-effect idempotency keys"
    )

    # =========================================================================
    # Read Path
    # =========================================================================
    read_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Timeout for synchronous behaviour/lookback reads"
    )

    # =========================================================================
    # Policy
    # =========================================================================
    policy_path: Optional[str] = Field(
        default=None,
        description="Optional YAML file overriding the default trust policy"
    )

    # =========================================================================
    # Metrics Configuration
    # =========================================================================
    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics endpoint"
    )
    metrics_port: int = Field(
        default=9100,
        description="Prometheus metrics port"
    )

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce required settings in production."""
        if self.app_env == "production" and not self.postgres_password:
            raise ValueError(
                "Missing required settings for production: POSTGRES_PASSWORD"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment on every call.
    """
    return Settings()


# Singleton settings instance for easy import
settings = get_settings()
