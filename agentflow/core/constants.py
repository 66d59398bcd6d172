"""Engine constants to replace magic numbers."""

from typing import Final


class PollingConfig:
    """Run polling constants (in seconds)."""

    POLL_INTERVAL: Final[float] = 1.0
    RUN_TIMEOUT: Final[float] = 300.0  # 5 minutes per run


class RetryConfig:
    """Retry configuration for transient provider errors."""

    MAX_ATTEMPTS: Final[int] = 3
    INITIAL_WAIT_SECONDS: Final[float] = 0.5
    MAX_WAIT_SECONDS: Final[float] = 4.0


class WorkflowDefaults:
    """Workflow engine defaults."""

    FEEDBACK_MAX_ITERATIONS: Final[int] = 3
    MAX_TOOL_ROUNDS: Final[int] = 5


class CircuitBreakerConfig:
    """Circuit breaker settings for remote model providers."""

    FAIL_MAX: Final[int] = 5
    RESET_TIMEOUT: Final[int] = 60  # seconds
