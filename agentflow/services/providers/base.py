"""Base run provider abstract class for strategy pattern."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from agentflow.services.agents.base import Agent
from agentflow.services.capabilities.base import ToolDefinition
from agentflow.services.runs.models import RunStatus, ToolCall, ToolOutput
from agentflow.services.threads.models import Message


@dataclass(frozen=True)
class ProviderRunState:
    """Status of a remote run as reported by the provider.

    Attributes:
        status: Current lifecycle status
        required_calls: Tool calls awaiting outputs (only in requires_action)
        output: Final answer text (only in completed)
        last_error: Provider error description (failed/expired)
    """
    status: RunStatus
    required_calls: Tuple[ToolCall, ...] = ()
    output: Optional[str] = None
    last_error: Optional[str] = None


class BaseRunProvider(ABC):
    """Abstract base class for language-model run providers.

    A provider executes one agent turn remotely. The engine owns the
    conversation; the provider receives the full message list on every
    ``create_run`` and reports the final answer through ``get_status``.
    Implementations should raise ``TransientProviderError`` for failures that
    are worth retrying.
    """

    @abstractmethod
    async def create_run(
        self,
        agent: Agent,
        tools: Sequence[ToolDefinition],
        messages: Sequence[Message],
        additional_instructions: Optional[str] = None,
    ) -> str:
        """
        Begin generating a response.

        Args:
            agent: Agent whose instructions, model and settings apply
            tools: Definitions of the capabilities the agent may call
            messages: Thread messages, oldest first
            additional_instructions: Extra run-scoped instructions

        Returns:
            Opaque run handle
        """
        pass

    @abstractmethod
    async def get_status(self, handle: str) -> ProviderRunState:
        """Report the current state of a run."""
        pass

    @abstractmethod
    async def submit_tool_outputs(self, handle: str, outputs: Sequence[ToolOutput]) -> None:
        """Submit one output per requested tool call and resume the run."""
        pass

    @abstractmethod
    async def cancel(self, handle: str) -> None:
        """Cancel a run. Cancelling a finished run is a no-op."""
        pass
