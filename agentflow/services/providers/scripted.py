"""Scripted run provider - deterministic in-memory provider.

Each run of an agent consumes the next queued *turn*: an ordered list of
``ScriptStep``s (reply, call tools, fail, expire, hang). It is used for tests,
demos and offline development; no network access is involved.

Example:
    provider = ScriptedRunProvider()
    provider.add_turn(
        "assistant",
        ScriptStep.call_tools(ToolCall("call_1", "echo", '{"msg": "ping"}')),
        ScriptStep.reply(lambda run: run.tool_outputs[-1][0].output),
    )
"""

import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from agentflow.core.exceptions import InvalidRunState, TransientProviderError
from agentflow.services.agents.base import Agent
from agentflow.services.capabilities.base import ToolDefinition
from agentflow.services.providers.base import BaseRunProvider, ProviderRunState
from agentflow.services.runs.models import RunStatus, ToolCall, ToolOutput
from agentflow.services.threads.models import Message, MessageRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScriptStep:
    """One scripted provider behavior.

    Attributes:
        kind: reply | call_tools | fail | expire | hang
        content: Reply text, or a callable building it from the run
        calls: Tool calls requested by a call_tools step
        error: Error text for fail/expire steps
        polls: Number of in_progress polls before the step resolves
    """
    kind: str
    content: Union[str, Callable[["ScriptedRun"], str], None] = None
    calls: Tuple[ToolCall, ...] = ()
    error: Optional[str] = None
    polls: int = 0

    @classmethod
    def reply(cls, content: Union[str, Callable[["ScriptedRun"], str]], polls: int = 0) -> "ScriptStep":
        return cls(kind="reply", content=content, polls=polls)

    @classmethod
    def call_tools(cls, *calls: ToolCall, polls: int = 0) -> "ScriptStep":
        return cls(kind="call_tools", calls=tuple(calls), polls=polls)

    @classmethod
    def fail(cls, error: str = "run failed", polls: int = 0) -> "ScriptStep":
        return cls(kind="fail", error=error, polls=polls)

    @classmethod
    def expire(cls, polls: int = 0) -> "ScriptStep":
        return cls(kind="expire", error="run expired", polls=polls)

    @classmethod
    def hang(cls) -> "ScriptStep":
        return cls(kind="hang")


@dataclass
class ScriptedRun:
    """State of one scripted run, exposed to reply callables and tests."""
    handle: str
    agent: Agent
    messages: Tuple[Message, ...]
    tools: Tuple[ToolDefinition, ...]
    additional_instructions: Optional[str]
    steps: List[ScriptStep]
    status: RunStatus = RunStatus.IN_PROGRESS
    index: int = 0
    polls_left: int = 0
    required_calls: Tuple[ToolCall, ...] = ()
    output: Optional[str] = None
    last_error: Optional[str] = None
    tool_outputs: List[List[ToolOutput]] = field(default_factory=list)
    status_polls: int = 0

    @property
    def last_user_message(self) -> Optional[str]:
        for message in reversed(self.messages):
            if message.role == MessageRole.USER:
                return message.content
        return None

    @property
    def current_step(self) -> Optional[ScriptStep]:
        if self.index < len(self.steps):
            return self.steps[self.index]
        return None


def default_reply(run: ScriptedRun) -> str:
    """Reply used when no turn is queued for an agent."""
    return f"[{run.agent.name}] {run.last_user_message or ''}".rstrip()


class ScriptedRunProvider(BaseRunProvider):
    """In-memory provider that plays back queued turns per agent."""

    def __init__(self, default: Optional[Callable[[ScriptedRun], str]] = default_reply):
        """Initialize provider.

        Args:
            default: Reply builder for agents without a queued turn; when None
                such runs fail instead
        """
        self.default = default
        self._turns: Dict[str, Deque[List[ScriptStep]]] = defaultdict(deque)
        self._runs: Dict[str, ScriptedRun] = {}
        self._transient_failures: Dict[str, int] = defaultdict(int)
        self.created: List[ScriptedRun] = []
        self.cancelled: List[str] = []

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def add_turn(self, agent_key: str, *steps: ScriptStep) -> "ScriptedRunProvider":
        """Queue the behavior of the next run of an agent (matched by id, then name)."""
        self._turns[agent_key].append(list(steps))
        return self

    def fail_next(self, operation: str, times: int = 1) -> "ScriptedRunProvider":
        """Make the next ``times`` calls of ``operation`` raise TransientProviderError."""
        self._transient_failures[operation] += times
        return self

    def get_run(self, handle: str) -> ScriptedRun:
        try:
            return self._runs[handle]
        except KeyError:
            raise InvalidRunState(f"Unknown run handle '{handle}'") from None

    def runs_for(self, agent_key: str) -> List[ScriptedRun]:
        return [run for run in self.created if agent_key in (run.agent.id, run.agent.name)]

    # ------------------------------------------------------------------
    # BaseRunProvider
    # ------------------------------------------------------------------

    async def create_run(
        self,
        agent: Agent,
        tools: Sequence[ToolDefinition],
        messages: Sequence[Message],
        additional_instructions: Optional[str] = None,
    ) -> str:
        self._maybe_fail("create_run")
        run = ScriptedRun(
            handle=f"scripted_{uuid.uuid4().hex[:12]}",
            agent=agent,
            messages=tuple(messages),
            tools=tuple(tools),
            additional_instructions=additional_instructions,
            steps=self._next_turn(agent),
        )
        run.polls_left = run.current_step.polls if run.current_step else 0
        self._runs[run.handle] = run
        self.created.append(run)
        logger.debug(f"Scripted run {run.handle} created for agent {agent.name}")
        return run.handle

    async def get_status(self, handle: str) -> ProviderRunState:
        self._maybe_fail("get_status")
        run = self.get_run(handle)
        run.status_polls += 1

        if run.status == RunStatus.IN_PROGRESS:
            self._advance(run)

        return ProviderRunState(
            status=run.status,
            required_calls=run.required_calls,
            output=run.output,
            last_error=run.last_error,
        )

    async def submit_tool_outputs(self, handle: str, outputs: Sequence[ToolOutput]) -> None:
        self._maybe_fail("submit_tool_outputs")
        run = self.get_run(handle)
        if run.status != RunStatus.REQUIRES_ACTION:
            raise InvalidRunState(f"Scripted run {handle} is not waiting for tool outputs")
        run.tool_outputs.append(list(outputs))
        run.required_calls = ()
        run.index += 1
        run.polls_left = run.current_step.polls if run.current_step else 0
        run.status = RunStatus.IN_PROGRESS

    async def cancel(self, handle: str) -> None:
        self._maybe_fail("cancel")
        run = self.get_run(handle)
        self.cancelled.append(handle)
        if not run.status.is_terminal:
            run.status = RunStatus.CANCELLED

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _next_turn(self, agent: Agent) -> List[ScriptStep]:
        for key in (agent.id, agent.name):
            if self._turns.get(key):
                return self._turns[key].popleft()
        if self.default is None:
            return [ScriptStep.fail(f"No scripted turn for agent '{agent.name}'")]
        return [ScriptStep.reply(self.default)]

    def _advance(self, run: ScriptedRun) -> None:
        step = run.current_step
        if step is None:
            run.status = RunStatus.COMPLETED
            return
        if step.kind == "hang":
            return
        if run.polls_left > 0:
            run.polls_left -= 1
            return

        if step.kind == "reply":
            run.output = step.content(run) if callable(step.content) else step.content
            run.status = RunStatus.COMPLETED
        elif step.kind == "call_tools":
            run.required_calls = step.calls
            run.status = RunStatus.REQUIRES_ACTION
        elif step.kind == "fail":
            run.last_error = step.error
            run.status = RunStatus.FAILED
        elif step.kind == "expire":
            run.last_error = step.error
            run.status = RunStatus.EXPIRED
        else:
            raise ValueError(f"Unknown script step kind: {step.kind}")

    def _maybe_fail(self, operation: str) -> None:
        if self._transient_failures[operation] > 0:
            self._transient_failures[operation] -= 1
            raise TransientProviderError(f"Simulated transient failure in {operation}")
