"""Tests for ScriptedRunProvider and ProviderRegistry."""

import pytest

from agentflow.core.exceptions import (
    ConfigurationError,
    InvalidRunState,
    TransientProviderError,
)
from agentflow.services.agents.base import Agent
from agentflow.services.providers.base import BaseRunProvider
from agentflow.services.providers.registry import (
    PROVIDER_OPENAI,
    PROVIDER_SCRIPTED,
    ProviderRegistry,
    default_provider_registry,
    resolve_provider,
)
from agentflow.services.providers.scripted import ScriptedRunProvider, ScriptStep
from agentflow.services.runs.engine import RunEngine
from agentflow.services.runs.models import RunStatus, ToolCall, ToolOutput
from agentflow.services.threads.models import Message, MessageRole


@pytest.fixture
def agent():
    return Agent(
        id="agent_1",
        name="writer",
        instructions="Write.",
        model="gpt-4o",
        temperature=0.7,
    )


@pytest.fixture
def messages():
    return [Message(id="msg_1", role=MessageRole.USER, content="Write a haiku")]


class TestScriptedRunProvider:
    """Test scripted playback."""

    @pytest.mark.asyncio
    async def test_default_reply(self, agent, messages):
        provider = ScriptedRunProvider()

        handle = await provider.create_run(agent, [], messages)
        state = await provider.get_status(handle)

        assert state.status == RunStatus.COMPLETED
        assert state.output == "[writer] Write a haiku"

    @pytest.mark.asyncio
    async def test_no_default_fails(self, agent, messages):
        provider = ScriptedRunProvider(default=None)

        handle = await provider.create_run(agent, [], messages)
        state = await provider.get_status(handle)

        assert state.status == RunStatus.FAILED
        assert "writer" in state.last_error

    @pytest.mark.asyncio
    async def test_turns_are_consumed_in_order(self, agent, messages):
        provider = ScriptedRunProvider()
        provider.add_turn("writer", ScriptStep.reply("first"))
        provider.add_turn("agent_1", ScriptStep.reply("by id"))

        outputs = []
        for _ in range(3):
            handle = await provider.create_run(agent, [], messages)
            outputs.append((await provider.get_status(handle)).output)

        assert outputs == ["by id", "first", "[writer] Write a haiku"]
        assert len(provider.runs_for("writer")) == 3

    @pytest.mark.asyncio
    async def test_tool_step_then_reply(self, agent, messages):
        provider = ScriptedRunProvider()
        provider.add_turn(
            "writer",
            ScriptStep.call_tools(ToolCall("call_1", "echo", "{}")),
            ScriptStep.reply(lambda run: f"got {run.tool_outputs[0][0].output}"),
        )
        handle = await provider.create_run(agent, [], messages)

        state = await provider.get_status(handle)
        assert state.status == RunStatus.REQUIRES_ACTION
        assert state.required_calls == (ToolCall("call_1", "echo", "{}"),)

        await provider.submit_tool_outputs(handle, [ToolOutput("call_1", "pong")])
        state = await provider.get_status(handle)

        assert state.status == RunStatus.COMPLETED
        assert state.output == "got pong"

    @pytest.mark.asyncio
    async def test_submit_outside_requires_action(self, agent, messages):
        provider = ScriptedRunProvider()
        handle = await provider.create_run(agent, [], messages)

        with pytest.raises(InvalidRunState):
            await provider.submit_tool_outputs(handle, [])

    @pytest.mark.asyncio
    async def test_fail_next(self, agent, messages):
        provider = ScriptedRunProvider().fail_next("create_run")

        with pytest.raises(TransientProviderError):
            await provider.create_run(agent, [], messages)
        assert await provider.create_run(agent, [], messages)

    @pytest.mark.asyncio
    async def test_cancel_hanging_run(self, agent, messages):
        provider = ScriptedRunProvider()
        provider.add_turn("writer", ScriptStep.hang())
        handle = await provider.create_run(agent, [], messages)

        assert (await provider.get_status(handle)).status == RunStatus.IN_PROGRESS
        await provider.cancel(handle)

        assert (await provider.get_status(handle)).status == RunStatus.CANCELLED
        assert provider.cancelled == [handle]


class FailingProvider(ScriptedRunProvider):
    def __init__(self):
        raise ValueError("missing credentials")


class TestProviderRegistry:
    """Test lazy provider instantiation."""

    def test_get_provider_is_lazy_and_cached(self):
        registry = ProviderRegistry()
        registry.register(PROVIDER_SCRIPTED, ScriptedRunProvider)

        first = registry.get_provider("Scripted")
        second = registry.get_provider(PROVIDER_SCRIPTED)

        assert isinstance(first, BaseRunProvider)
        assert first is second
        assert registry.is_available(PROVIDER_SCRIPTED)

    def test_failed_initialization_returns_none(self):
        registry = ProviderRegistry()
        registry.register("broken", FailingProvider)

        assert registry.get_provider("broken") is None
        assert not registry.is_available("broken")

    def test_unknown_provider(self):
        assert ProviderRegistry().get_provider("nope") is None

    def test_default_registry(self):
        registry = default_provider_registry()

        assert registry.list_providers() == [PROVIDER_OPENAI, PROVIDER_SCRIPTED]
        assert isinstance(registry.get_provider(PROVIDER_SCRIPTED), ScriptedRunProvider)

    def test_resolve_provider_by_name(self):
        registry = ProviderRegistry()
        registry.register(PROVIDER_SCRIPTED, ScriptedRunProvider)

        assert isinstance(resolve_provider(PROVIDER_SCRIPTED, registry), ScriptedRunProvider)

    def test_resolve_unknown_provider_lists_registered(self):
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_provider("nope")

        assert "scripted" in str(exc_info.value)

    def test_resolve_failed_provider(self):
        registry = ProviderRegistry()
        registry.register("broken", FailingProvider)

        with pytest.raises(ConfigurationError):
            resolve_provider("broken", registry)


class TestRunEngineProviderSelection:
    """Test that the run engine picks its provider through the registry."""

    def test_provider_given_by_name(self, agents, capabilities, threads, test_settings):
        engine = RunEngine(agents, capabilities, threads, PROVIDER_SCRIPTED, settings=test_settings)

        assert isinstance(engine.provider, ScriptedRunProvider)

    def test_provider_taken_from_settings(self, agents, capabilities, threads, test_settings):
        configured = test_settings.model_copy(update={"run_provider": PROVIDER_SCRIPTED})

        engine = RunEngine(agents, capabilities, threads, settings=configured)

        assert isinstance(engine.provider, ScriptedRunProvider)

    def test_unknown_configured_provider(self, agents, capabilities, threads, test_settings):
        configured = test_settings.model_copy(update={"run_provider": "nope"})

        with pytest.raises(ConfigurationError):
            RunEngine(agents, capabilities, threads, settings=configured)
