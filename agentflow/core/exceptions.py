"""Error taxonomy for the orchestration engine.

Every error carries whichever run, thread and agent identifiers were known
where it was raised, so a failure can be traced back to the remote state it
refers to.
"""

from typing import Any, Optional


class OrchestrationError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        run_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ):
        self.message = message
        self.run_id = run_id
        self.thread_id = thread_id
        self.agent_id = agent_id
        super().__init__(self._format())

    def _format(self) -> str:
        context = [
            f"{label}={value}"
            for label, value in (
                ("run", self.run_id),
                ("thread", self.thread_id),
                ("agent", self.agent_id),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"

    @property
    def context(self) -> dict[str, Any]:
        """Identifiers attached to this error."""
        return {
            "run_id": self.run_id,
            "thread_id": self.thread_id,
            "agent_id": self.agent_id,
        }


# ---------------------------------------------------------------------------
# Configuration errors: fatal at setup, never retried
# ---------------------------------------------------------------------------


class ConfigurationError(OrchestrationError):
    """Duplicate or unknown agent/capability, or an invalid reference."""


class DuplicateCapability(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Capability '{name}' is already registered")


class UnknownCapability(ConfigurationError):
    def __init__(self, name: str, available: Optional[list[str]] = None):
        self.name = name
        message = f"Capability '{name}' not found"
        if available is not None:
            message += f". Available capabilities: {available}"
        super().__init__(message)


class InvalidCapabilityReference(ConfigurationError):
    def __init__(self, missing: list[str], agent_id: Optional[str] = None):
        self.missing = missing
        super().__init__(
            f"Agent references unregistered capabilities: {missing}",
            agent_id=agent_id,
        )


class DuplicateAgent(ConfigurationError):
    def __init__(self, agent_id: str):
        super().__init__("Agent is already registered", agent_id=agent_id)


class UnknownAgent(ConfigurationError):
    def __init__(self, agent_id: str):
        super().__init__("Agent not found", agent_id=agent_id)


class UnknownThread(ConfigurationError):
    def __init__(self, thread_id: str):
        super().__init__("Thread not found", thread_id=thread_id)


class UnknownRun(ConfigurationError):
    def __init__(self, run_id: str):
        super().__init__("Run not found", run_id=run_id)


# ---------------------------------------------------------------------------
# Capability invocation errors: reported back to the run as tool-error payloads
# ---------------------------------------------------------------------------


class InvalidArguments(OrchestrationError):
    """Tool arguments did not match the capability's input schema."""

    def __init__(self, capability: str, detail: str):
        self.capability = capability
        self.detail = detail
        super().__init__(f"Invalid arguments for capability '{capability}': {detail}")


class CapabilityExecutionError(OrchestrationError):
    """The capability executor raised."""

    def __init__(self, capability: str, cause: BaseException):
        self.capability = capability
        self.cause = cause
        super().__init__(
            f"Capability '{capability}' failed: {type(cause).__name__}: {cause}"
        )


# ---------------------------------------------------------------------------
# Provider and run lifecycle errors
# ---------------------------------------------------------------------------


class TransientProviderError(OrchestrationError):
    """Network or polling failure that is worth retrying."""


class RunEngineUnavailable(OrchestrationError):
    """Transient provider failures persisted past the retry budget."""


class InvalidRunState(OrchestrationError):
    """A run operation was attempted in a state that does not allow it."""


class RunTerminatedError(OrchestrationError):
    """The run reached failed, cancelled or expired."""

    def __init__(
        self,
        status: str,
        cause: Optional[str] = None,
        *,
        run_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ):
        self.status = status
        self.cause = cause
        message = f"Run {status}"
        if cause:
            message += f": {cause}"
        super().__init__(message, run_id=run_id, thread_id=thread_id, agent_id=agent_id)


class RunTimeoutError(OrchestrationError):
    """The caller stopped waiting for a run."""

    def __init__(
        self,
        timeout: float,
        *,
        run_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ):
        self.timeout = timeout
        super().__init__(
            f"Run timed out after {timeout:g}s",
            run_id=run_id,
            thread_id=thread_id,
            agent_id=agent_id,
        )


class WorkflowTimeoutError(OrchestrationError):
    """A workflow-level deadline fired before the workflow finished."""

    def __init__(self, timeout: float, **context: Any):
        self.timeout = timeout
        super().__init__(f"Workflow timed out after {timeout:g}s", **context)


class EmptyRunOutput(OrchestrationError):
    """A run completed without producing an agent message."""
