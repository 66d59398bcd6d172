"""Engine configuration loaded from environment variables.

Configuration Priority (highest to lowest):
1. System environment variables (export VAR=value)
2. .env file
3. Default values in config.py (lowest)

Engines receive a ``Settings`` instance at construction time and fall back to
the module-level ``settings`` object, so tests can pass their own values
without touching the environment.
"""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

from agentflow.core.constants import PollingConfig, RetryConfig, WorkflowDefaults


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Environment
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # OpenAI Provider Configuration
    # Required only if the OpenAI chat provider is used
    openai_api_key: str = ""
    openai_api_base: str | None = None  # Optional: OpenAI-compatible gateway URL
    openai_model_default: str = "gpt-4o"
    openai_timeout: int = 120  # Per-request timeout (seconds)

    # Run Engine
    run_provider: str = "openai"  # Name in the provider registry ("openai" or "scripted")
    run_poll_interval: float = PollingConfig.POLL_INTERVAL
    run_timeout: float = PollingConfig.RUN_TIMEOUT
    provider_retry_attempts: int = RetryConfig.MAX_ATTEMPTS
    provider_retry_wait_min: float = RetryConfig.INITIAL_WAIT_SECONDS
    provider_retry_wait_max: float = RetryConfig.MAX_WAIT_SECONDS
    max_tool_rounds: int = WorkflowDefaults.MAX_TOOL_ROUNDS

    # Workflow Engine
    feedback_max_iterations: int = WorkflowDefaults.FEEDBACK_MAX_ITERATIONS
    default_temperature: float = 0.7

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for scripts and ad-hoc runs."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
