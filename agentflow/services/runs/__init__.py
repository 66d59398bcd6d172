"""Run Engine - one agent execution against a thread, as a state machine.

The engine itself lives in ``agentflow.services.runs.engine`` (it depends on
the provider package, which depends on these models).

Usage:
    from agentflow.services.runs.engine import RunEngine

    engine = RunEngine(agents, capabilities, threads, provider)
    run_id = await engine.start(agent_id, thread_id)
    snapshot = await engine.await_completion(run_id)
"""

from agentflow.services.runs.clock import (
    CancellationToken,
    Clock,
    SystemClock,
    with_timeout,
)
from agentflow.services.runs.models import (
    Run,
    RunEvent,
    RunStatus,
    ToolCall,
    ToolOutput,
)

__all__ = [
    "CancellationToken",
    "Clock",
    "SystemClock",
    "with_timeout",
    "Run",
    "RunEvent",
    "RunStatus",
    "ToolCall",
    "ToolOutput",
]
