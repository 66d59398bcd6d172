"""Tests for OpenAIChatRunProvider with a mocked AsyncOpenAI client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError
from pydantic import BaseModel

from agentflow.core.config import Settings
from agentflow.core.exceptions import InvalidRunState
from agentflow.services.agents.base import Agent
from agentflow.services.capabilities.base import ToolDefinition
from agentflow.services.providers.openai_provider import OpenAIChatRunProvider
from agentflow.services.runs.engine import RunEngine
from agentflow.services.runs.models import RunStatus, ToolOutput
from agentflow.services.threads.models import Message, MessageRole, NewMessage


class Verdict(BaseModel):
    approved: bool


def _completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.fixture
def openai_settings():
    return Settings(
        openai_api_key="",
        provider_retry_attempts=3,
        provider_retry_wait_min=0.0,
        provider_retry_wait_max=0.0,
        max_tool_rounds=2,
        run_poll_interval=0.01,
        run_timeout=5.0,
    )


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def openai_provider(openai_settings, mock_client):
    return OpenAIChatRunProvider(settings=openai_settings, client=mock_client)


@pytest.fixture
def agent():
    return Agent(
        id="agent_1",
        name="assistant",
        instructions="You are helpful.",
        model="gpt-4o-mini",
        temperature=0.2,
        capabilities=("echo",),
    )


@pytest.fixture
def echo_tool():
    return ToolDefinition(name="echo", description="Echo", parameters={"type": "object"})


async def _finish_round(provider, handle):
    await provider._runs[handle].task


class TestOpenAIChatRunProvider:
    """Test the emulated run lifecycle."""

    def test_requires_api_key_without_client(self, openai_settings):
        with pytest.raises(ValueError):
            OpenAIChatRunProvider(settings=openai_settings)

    @pytest.mark.asyncio
    async def test_completion_without_tools(self, openai_provider, mock_client, agent):
        mock_client.chat.completions.create.return_value = _completion("Hello there")
        messages = [Message(id="msg_1", role=MessageRole.USER, content="Hi")]

        handle = await openai_provider.create_run(agent, [], messages, "Be brief.")
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.COMPLETED
        assert state.output == "Hello there"

        request = mock_client.chat.completions.create.call_args.kwargs
        assert request["model"] == "gpt-4o-mini"
        assert request["temperature"] == 0.2
        assert request["messages"][0] == {"role": "system", "content": "You are helpful.\n\nBe brief."}
        assert request["messages"][1] == {"role": "user", "content": "Hi"}
        assert "tools" not in request

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, openai_provider, mock_client, agent, echo_tool):
        mock_client.chat.completions.create.side_effect = [
            _completion(tool_calls=[
                _tool_call("call_1", "echo", '{"msg": "a"}'),
                _tool_call("call_2", "echo", '{"msg": "b"}'),
            ]),
            _completion("both echoed"),
        ]

        handle = await openai_provider.create_run(agent, [echo_tool], [], None)
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.REQUIRES_ACTION
        assert [call.id for call in state.required_calls] == ["call_1", "call_2"]

        first_request = mock_client.chat.completions.create.call_args_list[0].kwargs
        assert first_request["tools"][0]["function"]["name"] == "echo"
        assert first_request["parallel_tool_calls"] is True

        await openai_provider.submit_tool_outputs(
            handle, [ToolOutput("call_1", '{"msg": "a"}'), ToolOutput("call_2", '{"msg": "b"}')],
        )
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.COMPLETED
        assert state.output == "both echoed"
        tool_messages = [
            m for m in mock_client.chat.completions.create.call_args_list[1].kwargs["messages"]
            if m["role"] == "tool"
        ]
        assert [m["tool_call_id"] for m in tool_messages] == ["call_1", "call_2"]

    @pytest.mark.asyncio
    async def test_submit_requires_matching_outputs(self, openai_provider, mock_client, agent, echo_tool):
        mock_client.chat.completions.create.return_value = _completion(
            tool_calls=[_tool_call("call_1", "echo", "{}")],
        )
        handle = await openai_provider.create_run(agent, [echo_tool], [], None)
        await _finish_round(openai_provider, handle)

        with pytest.raises(InvalidRunState):
            await openai_provider.submit_tool_outputs(handle, [ToolOutput("call_9", "{}")])

    @pytest.mark.asyncio
    async def test_round_limit_fails_run(self, openai_provider, mock_client, agent, echo_tool):
        mock_client.chat.completions.create.return_value = _completion(
            tool_calls=[_tool_call("call_1", "echo", "{}")],
        )
        handle = await openai_provider.create_run(agent, [echo_tool], [], None)

        for _ in range(2):
            await _finish_round(openai_provider, handle)
            await openai_provider.submit_tool_outputs(handle, [ToolOutput("call_1", "{}")])
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.FAILED
        assert "Maximum tool rounds" in state.last_error

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, openai_provider, mock_client, agent):
        mock_client.chat.completions.create.side_effect = [
            APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")),
            _completion("recovered"),
        ]

        handle = await openai_provider.create_run(agent, [], [], None)
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.COMPLETED
        assert mock_client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_errors_fail_run(self, openai_provider, mock_client, agent):
        mock_client.chat.completions.create.side_effect = APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"),
        )

        handle = await openai_provider.create_run(agent, [], [], None)
        await _finish_round(openai_provider, handle)
        state = await openai_provider.get_status(handle)

        assert state.status == RunStatus.FAILED
        assert "TransientProviderError" in state.last_error
        assert mock_client.chat.completions.create.await_count == 3

    @pytest.mark.asyncio
    async def test_response_shape_sent_as_json_schema(self, openai_provider, mock_client, agent):
        mock_client.chat.completions.create.return_value = _completion('{"approved": true}')
        shaped = Agent(
            id=agent.id,
            name=agent.name,
            instructions=agent.instructions,
            model=agent.model,
            temperature=agent.temperature,
            response_shape=Verdict,
            max_tokens=256,
        )

        handle = await openai_provider.create_run(shaped, [], [], None)
        await _finish_round(openai_provider, handle)

        request = mock_client.chat.completions.create.call_args.kwargs
        assert request["response_format"]["type"] == "json_schema"
        assert request["response_format"]["json_schema"]["name"] == "Verdict"
        assert request["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_round(self, openai_provider, mock_client, agent):
        blocker = asyncio.Event()

        async def slow_create(**kwargs):
            await blocker.wait()
            return _completion("too late")

        mock_client.chat.completions.create.side_effect = slow_create
        handle = await openai_provider.create_run(agent, [], [], None)
        await asyncio.sleep(0)
        task = openai_provider._runs[handle].task

        await openai_provider.cancel(handle)
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert handle not in openai_provider._runs
        # Cancelling again after the run is released is a no-op
        await openai_provider.cancel(handle)

    @pytest.mark.asyncio
    async def test_finished_runs_are_released(self, openai_provider, mock_client, agent):
        mock_client.chat.completions.create.return_value = _completion("done")

        handles = [await openai_provider.create_run(agent, [], [], None) for _ in range(3)]
        for handle in handles:
            await _finish_round(openai_provider, handle)
            state = await openai_provider.get_status(handle)
            assert state.status == RunStatus.COMPLETED

        assert openai_provider._runs == {}
        with pytest.raises(InvalidRunState):
            await openai_provider.get_status(handles[0])

    @pytest.mark.asyncio
    async def test_unknown_handle(self, openai_provider):
        with pytest.raises(InvalidRunState):
            await openai_provider.get_status("chatrun_missing")


class TestOpenAIProviderWithRunEngine:
    """Test the provider driven by the run engine."""

    @pytest.mark.asyncio
    async def test_echo_scenario(self, agents, capabilities, threads, clock, openai_settings, mock_client, assistant_id):
        mock_client.chat.completions.create.side_effect = [
            _completion(tool_calls=[_tool_call("call_1", "echo", '{"msg": "ping"}')]),
            _completion('{"msg": "ping"}'),
        ]
        provider = OpenAIChatRunProvider(settings=openai_settings, client=mock_client)
        engine = RunEngine(agents, capabilities, threads, provider, settings=openai_settings, clock=clock)
        thread_id = threads.create()
        await threads.append(thread_id, NewMessage.user("Echo ping"))

        run_id = await engine.start(assistant_id, thread_id)
        snapshot = await engine.await_completion(run_id)

        assert snapshot.last_agent_message().content == '{"msg": "ping"}'
        tool_message = mock_client.chat.completions.create.call_args_list[1].kwargs["messages"][-1]
        assert tool_message == {"role": "tool", "tool_call_id": "call_1", "content": '{"msg": "ping"}'}
