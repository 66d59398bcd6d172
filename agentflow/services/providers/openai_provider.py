"""OpenAI run provider implementation using the Chat Completions API.

The remote run lifecycle is emulated on top of chat completions: every round
is one completion request executed in a background task. A response with
tool calls pauses the run in ``requires_action``; submitting the tool outputs
appends them to the conversation and starts the next round. A response
without tool calls completes the run.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentflow.core.config import Settings, settings as default_settings
from agentflow.core.constants import CircuitBreakerConfig
from agentflow.core.exceptions import InvalidRunState, TransientProviderError
from agentflow.services.agents.base import Agent
from agentflow.services.capabilities.base import ToolDefinition
from agentflow.services.providers.base import BaseRunProvider, ProviderRunState
from agentflow.services.runs.models import RunStatus, ToolCall, ToolOutput
from agentflow.services.threads.models import Message, MessageRole

logger = logging.getLogger(__name__)

# Circuit breaker for the OpenAI API
openai_circuit_breaker = CircuitBreaker(
    fail_max=CircuitBreakerConfig.FAIL_MAX,
    reset_timeout=CircuitBreakerConfig.RESET_TIMEOUT,
)

_ROLE_MAP = {
    MessageRole.USER: "user",
    MessageRole.AGENT: "assistant",
}


@dataclass
class _ChatRun:
    handle: str
    agent: Agent
    tools: Tuple[ToolDefinition, ...]
    messages: List[Dict[str, Any]]
    status: RunStatus = RunStatus.QUEUED
    required_calls: Tuple[ToolCall, ...] = ()
    output: Optional[str] = None
    last_error: Optional[str] = None
    rounds: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class OpenAIChatRunProvider(BaseRunProvider):
    """Run provider backed by OpenAI chat completions with function calling."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """Initialize the OpenAI client.

        Args:
            settings: API key, base URL, timeouts and round limit
            client: Pre-built client (tests inject a mock here)

        Raises:
            ValueError: If no client is given and no API key is configured
        """
        self.settings = settings or default_settings

        if client is None:
            if not self.settings.openai_api_key:
                logger.error("OpenAI API key is not configured. OpenAI runs will not work.")
                raise ValueError("OpenAI API key is required for the OpenAI provider")
            client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_api_base,
                timeout=httpx.Timeout(self.settings.openai_timeout + 10, connect=10.0),
            )
            logger.info(f"OpenAI provider configured (default model: {self.settings.openai_model_default})")

        self.client = client
        self._runs: Dict[str, _ChatRun] = {}

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
        run = _ChatRun(
            handle=f"chatrun_{uuid.uuid4().hex[:16]}",
            agent=agent,
            tools=tuple(tools),
            messages=self._build_messages(agent, messages, additional_instructions),
        )
        self._runs[run.handle] = run
        self._schedule_round(run)
        return run.handle

    async def get_status(self, handle: str) -> ProviderRunState:
        run = self._get(handle)
        state = ProviderRunState(
            status=run.status,
            required_calls=run.required_calls,
            output=run.output,
            last_error=run.last_error,
        )
        if run.status.is_terminal:
            # A terminal state is reported once, then the conversation is released
            del self._runs[handle]
        return state

    async def submit_tool_outputs(self, handle: str, outputs: Sequence[ToolOutput]) -> None:
        run = self._get(handle)
        if run.status != RunStatus.REQUIRES_ACTION:
            raise InvalidRunState(f"OpenAI run {handle} is not waiting for tool outputs")

        expected = {call.id for call in run.required_calls}
        if {output.call_id for output in outputs} != expected:
            raise InvalidRunState(f"Tool outputs for run {handle} do not match requested calls")

        for output in outputs:
            run.messages.append({
                "role": "tool",
                "tool_call_id": output.call_id,
                "content": output.output,
            })
        run.required_calls = ()
        self._schedule_round(run)

    async def cancel(self, handle: str) -> None:
        run = self._runs.pop(handle, None)
        if run is None:
            logger.debug(f"OpenAI run {handle} already finished; nothing to cancel")
            return
        if run.task is not None and not run.task.done():
            run.task.cancel()
        if not run.status.is_terminal:
            run.status = RunStatus.CANCELLED
            logger.info(f"OpenAI run {handle} cancelled")

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def _schedule_round(self, run: _ChatRun) -> None:
        run.status = RunStatus.IN_PROGRESS
        run.task = asyncio.get_running_loop().create_task(self._run_round(run))

    async def _run_round(self, run: _ChatRun) -> None:
        try:
            response = await self._request_completion(run)
        except asyncio.CancelledError:
            raise
        except CircuitBreakerError:
            logger.error("OpenAI API circuit breaker is OPEN")
            self._fail(run, "OpenAI API circuit breaker is open")
            return
        except Exception as e:
            logger.error(f"OpenAI API error in run {run.handle}: {e}", exc_info=True)
            self._fail(run, f"{type(e).__name__}: {e}")
            return

        if run.status.is_terminal:
            return

        if not response or not response.choices:
            self._fail(run, "Invalid response from OpenAI API")
            return

        message = response.choices[0].message
        run.rounds += 1

        if message.tool_calls:
            if run.rounds > self.settings.max_tool_rounds:
                self._fail(run, f"Maximum tool rounds ({self.settings.max_tool_rounds}) reached")
                return
            calls = tuple(
                ToolCall(
                    id=tool_call.id,
                    name=tool_call.function.name,
                    arguments=tool_call.function.arguments or "{}",
                )
                for tool_call in message.tool_calls
            )
            run.messages.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in calls
                ],
            })
            run.required_calls = calls
            run.status = RunStatus.REQUIRES_ACTION
            logger.info(f"OpenAI run {run.handle} requested {len(calls)} tool call(s)")
            return

        run.output = message.content or ""
        run.messages.append({"role": "assistant", "content": run.output})
        run.status = RunStatus.COMPLETED
        logger.info(f"OpenAI run {run.handle} completed after {run.rounds} round(s)")

    @openai_circuit_breaker
    async def _request_completion(self, run: _ChatRun) -> Any:
        """Send one chat completion request, retrying transient failures.

        Raises:
            TransientProviderError: If the API stays unreachable
        """
        request = self._build_request(run)
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.settings.provider_retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_wait_min,
                min=self.settings.provider_retry_wait_min,
                max=self.settings.provider_retry_wait_max,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    logger.debug(f"Sending completion request for run {run.handle} (model: {run.agent.model})")
                    return await asyncio.wait_for(
                        self.client.chat.completions.create(**request),
                        timeout=self.settings.openai_timeout,
                    )
                except (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError) as e:
                    raise TransientProviderError(f"OpenAI request failed: {e}") from e
                except asyncio.TimeoutError as e:
                    raise TransientProviderError(
                        f"OpenAI request timed out after {self.settings.openai_timeout}s"
                    ) from e

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_request(self, run: _ChatRun) -> Dict[str, Any]:
        agent = run.agent
        request: Dict[str, Any] = {
            "model": agent.model,
            "messages": list(run.messages),
            "temperature": agent.temperature,
        }
        if agent.max_tokens:
            request["max_tokens"] = agent.max_tokens
        if run.tools:
            request["tools"] = [tool.to_openai() for tool in run.tools]
            request["parallel_tool_calls"] = agent.parallel_tool_calls
        if agent.response_shape is not None:
            request["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": agent.response_shape.__name__,
                    "schema": agent.response_shape.model_json_schema(),
                },
            }
        return request

    @staticmethod
    def _build_messages(
        agent: Agent,
        messages: Sequence[Message],
        additional_instructions: Optional[str],
    ) -> List[Dict[str, Any]]:
        system_prompt = agent.instructions
        if additional_instructions:
            system_prompt = f"{system_prompt}\n\n{additional_instructions}"

        built: List[Dict[str, Any]] = []
        if system_prompt:
            built.append({"role": "system", "content": system_prompt})
        built.extend(
            {"role": _ROLE_MAP[message.role], "content": message.content}
            for message in messages
        )
        return built

    def _fail(self, run: _ChatRun, error: str) -> None:
        if not run.status.is_terminal:
            run.last_error = error
            run.status = RunStatus.FAILED

    def _get(self, handle: str) -> _ChatRun:
        try:
            return self._runs[handle]
        except KeyError:
            raise InvalidRunState(f"Unknown OpenAI run handle '{handle}'") from None
