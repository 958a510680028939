"""
Application configuration using Pydantic Settings.

Loads configuration from CONVOY_* environment variables and .env file.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CONVOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="convoy", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging / Privacy
    log_redaction_enabled: bool = Field(default=True, description="Enable credential redaction in logs")

    # Run output
    reports_dir: str = Field(
        default=".convoy/runs",
        description="Directory receiving per-run logs, artifacts.json and report.json",
    )
    output_tail_chars: int = Field(
        default=4000,
        ge=0,
        description="Captured output kept on a failed stage's record for diagnosis",
    )

    # Scheduling
    parallel_limit: int = Field(default=4, ge=1, description="Max concurrently running stages")
    default_action_timeout: float = Field(
        default=1800.0,
        gt=0,
        description="Per-action command timeout in seconds",
    )
    teardown_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for stopping an ephemeral target",
    )

    # Secrets
    secret_env_prefix: str = Field(
        default="",
        description="Prefix under which secrets live in the environment (e.g. CI_SECRET_)",
    )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        """Fail fast on unknown log levels."""
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


# Global settings instance
settings = Settings()
