"""Run records and the run lifecycle state machine."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class RunStatus(str, Enum):
    """Run lifecycle states.

    queued -> in_progress -> {completed | failed | cancelled | expired | requires_action}
    requires_action -> in_progress | cancelled
    """
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.EXPIRED,
})

# Allowed transitions; anything else is a state-machine violation
TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.QUEUED: frozenset({
        RunStatus.IN_PROGRESS,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.EXPIRED,
    }),
    RunStatus.IN_PROGRESS: frozenset({
        RunStatus.REQUIRES_ACTION,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.EXPIRED,
    }),
    RunStatus.REQUIRES_ACTION: frozenset({
        RunStatus.IN_PROGRESS,
        RunStatus.CANCELLED,
    }),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
    RunStatus.EXPIRED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class ToolCall:
    """A capability call requested by the provider while the run is paused."""
    id: str
    name: str
    arguments: str = "{}"  # raw JSON string as sent by the provider


@dataclass(frozen=True)
class ToolOutput:
    """Result of one tool call, submitted back to the provider."""
    call_id: str
    output: str
    is_error: bool = False

    @classmethod
    def success(cls, call_id: str, result: Any) -> "ToolOutput":
        output = result if isinstance(result, str) else json.dumps(result, default=str)
        return cls(call_id=call_id, output=output)

    @classmethod
    def failure(cls, call_id: str, error: BaseException) -> "ToolOutput":
        payload = {
            "error": True,
            "type": type(error).__name__,
            "message": getattr(error, "message", None) or str(error),
        }
        return cls(call_id=call_id, output=json.dumps(payload), is_error=True)


@dataclass
class Run:
    """One execution of an agent against a thread.

    Owned and mutated only by the run engine under the run's lock; callers
    receive copies from ``RunEngine.get_run``.
    """
    id: str
    agent_id: str
    thread_id: str
    started_at: datetime
    status: RunStatus = RunStatus.QUEUED
    required_tool_calls: Tuple[ToolCall, ...] = ()
    provider_handle: Optional[str] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    tool_rounds: int = 0
    history: Tuple[RunStatus, ...] = field(default=(RunStatus.QUEUED,))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class RunEvent:
    """An observed status transition."""
    run_id: str
    previous: RunStatus
    status: RunStatus
    at: float  # clock time of the observation
