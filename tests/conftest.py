"""Shared fixtures for the orchestration tests."""

import asyncio
import heapq
import itertools

import pytest

from agentflow.core.config import Settings
from agentflow.services.agents.base import AgentConfig
from agentflow.services.agents.registry import AgentRegistry
from agentflow.services.capabilities.builtin import register_builtin_capabilities
from agentflow.services.capabilities.registry import CapabilityRegistry
from agentflow.services.providers.scripted import ScriptedRunProvider
from agentflow.services.runs.engine import RunEngine
from agentflow.services.threads.store import ThreadStore
from agentflow.services.workflows.engine import WorkflowEngine


class FakeClock:
    """Virtual clock that jumps forward whenever the event loop goes idle.

    Sleepers wait on futures ordered by their wake-up time. A ticker task
    advances virtual time in steps of at most ``step`` seconds, only after the
    loop has had a chance to run every ready callback, so concurrent timers
    (poll intervals, run deadlines, batch timeouts) fire in order without any
    real waiting.
    """

    def __init__(self, start: float = 0.0, step: float = 0.01):
        self.time = start
        self.step = step
        self.sleeps = []
        self._sleepers = []
        self._sequence = itertools.count()
        self._ticker = None

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        waiter = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.time + seconds, next(self._sequence), waiter))
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.get_running_loop().create_task(self._tick())
        try:
            await waiter
        finally:
            waiter.cancel()

    def _discard_finished(self) -> None:
        while self._sleepers and self._sleepers[0][2].done():
            heapq.heappop(self._sleepers)

    async def _tick(self) -> None:
        while True:
            for _ in range(20):
                await asyncio.sleep(0)
            # Threads started by sync capabilities get a moment of real time
            await asyncio.sleep(0.001)

            self._discard_finished()
            if not self._sleepers:
                return
            self.time = min(self._sleepers[0][0], self.time + self.step)
            while self._sleepers and self._sleepers[0][0] <= self.time:
                _, _, waiter = heapq.heappop(self._sleepers)
                if not waiter.done():
                    waiter.set_result(None)


@pytest.fixture
def test_settings():
    """Settings with fast polling and no retry backoff."""
    return Settings(
        openai_api_key="",
        run_poll_interval=0.01,
        run_timeout=5.0,
        provider_retry_attempts=3,
        provider_retry_wait_min=0.0,
        provider_retry_wait_max=0.0,
        max_tool_rounds=5,
        feedback_max_iterations=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def capabilities():
    """Capability registry with the built-in capabilities."""
    return register_builtin_capabilities(CapabilityRegistry())


@pytest.fixture
def agents(capabilities, test_settings):
    return AgentRegistry(capabilities, settings=test_settings)


@pytest.fixture
def threads():
    return ThreadStore()


@pytest.fixture
def provider():
    return ScriptedRunProvider()


@pytest.fixture
def run_engine(agents, capabilities, threads, provider, test_settings, clock):
    return RunEngine(
        agents,
        capabilities,
        threads,
        provider,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def workflows(agents, threads, run_engine, test_settings):
    return WorkflowEngine(agents, threads, run_engine, settings=test_settings)


@pytest.fixture
def assistant_id(agents):
    """Agent allowed to call the echo capability."""
    return agents.register(AgentConfig(
        name="assistant",
        instructions="Use the echo tool when asked.",
        capabilities=["echo"],
    ))
