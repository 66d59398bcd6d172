"""Run Engine - Drives one agent run through its lifecycle.

The engine starts a remote run through the provider collaborator, then polls
it as an explicit state machine:

    queued -> in_progress -> {completed | failed | cancelled | expired | requires_action}
    requires_action -> in_progress | cancelled

While the run is paused in ``requires_action`` the engine invokes every
requested capability concurrently and submits all outputs as one batch. A
failing tool is reported to the run as an error payload instead of aborting
the batch, so the agent can react to it. When several callers wait on the
same run, only one of them executes a given batch of calls.

Time only passes through the injected ``Clock``; timeouts and poll intervals
are therefore testable without real waits.
"""

import asyncio
import dataclasses
import inspect
import logging
import uuid
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentflow.core.config import Settings, settings as default_settings
from agentflow.core.exceptions import (
    CapabilityExecutionError,
    InvalidArguments,
    InvalidCapabilityReference,
    InvalidRunState,
    RunEngineUnavailable,
    RunTerminatedError,
    RunTimeoutError,
    TransientProviderError,
    UnknownCapability,
    UnknownRun,
    UnknownThread,
)
from agentflow.services.agents.base import Agent
from agentflow.services.agents.registry import AgentRegistry
from agentflow.services.capabilities.registry import CapabilityRegistry
from agentflow.services.providers.base import BaseRunProvider, ProviderRunState
from agentflow.services.providers.registry import resolve_provider
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
    can_transition,
)
from agentflow.services.threads.models import NewMessage, ThreadSnapshot
from agentflow.services.threads.store import ThreadStore

logger = logging.getLogger(__name__)

StatusCallback = Callable[[RunEvent], Union[None, Awaitable[None]]]


class RunEngine:
    """Starts runs and waits for them, dispatching tool calls mid-run.

    Example:
        engine = RunEngine(agents, capabilities, threads, provider)

        run_id = await engine.start(agent_id, thread_id)
        snapshot = await engine.await_completion(run_id, timeout=60)
        answer = snapshot.last_agent_message().content
    """

    def __init__(
        self,
        agents: AgentRegistry,
        capabilities: CapabilityRegistry,
        threads: ThreadStore,
        provider: Union[BaseRunProvider, str, None] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize engine.

        Args:
            agents: Agent definitions (read-only)
            capabilities: Tools invoked on requires_action (read-only)
            threads: Conversation store the runs read from and append to
            provider: Remote run provider, or its registry name
                (default: settings.run_provider)
            settings: Poll interval, timeouts and retry budget
            clock: Time source for polling and timeouts

        Raises:
            ConfigurationError: If a provider name cannot be resolved
        """
        self.agents = agents
        self.capabilities = capabilities
        self.threads = threads
        self.settings = settings or default_settings
        if provider is None or isinstance(provider, str):
            provider = resolve_provider(provider or self.settings.run_provider)
        self.provider = provider
        self.clock = clock or SystemClock()

        self._runs: Dict[str, Run] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._answered_calls: Dict[str, Set[str]] = {}
        self._claimed_calls: Dict[str, Set[str]] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        agent_id: str,
        thread_id: str,
        extra_instructions: Optional[str] = None,
    ) -> str:
        """Start a run of an agent against a thread.

        Args:
            agent_id: Registered agent
            thread_id: Existing thread whose messages condition the run
            extra_instructions: Run-scoped instructions appended to the agent's

        Returns:
            The run id

        Raises:
            UnknownAgent: If the agent is not registered
            UnknownThread: If the thread does not exist
            InvalidCapabilityReference: If a capability vanished since registration
            RunEngineUnavailable: If the provider stays unreachable
        """
        agent = self.agents.get(agent_id)
        if not self.threads.exists(thread_id):
            raise UnknownThread(thread_id)

        missing = self.capabilities.missing(agent.capabilities)
        if missing:
            raise InvalidCapabilityReference(missing, agent_id=agent_id)

        run = Run(
            id=f"run_{uuid.uuid4().hex[:16]}",
            agent_id=agent_id,
            thread_id=thread_id,
            started_at=datetime.now(timezone.utc),
        )
        self._runs[run.id] = run

        tools = self.capabilities.describe(agent.capabilities)
        messages = self.threads.list(thread_id)

        try:
            handle = await self._call_provider(
                run,
                "create_run",
                self.provider.create_run,
                agent,
                tools,
                messages,
                extra_instructions,
            )
        except asyncio.CancelledError:
            # No awaits here: the task is being cancelled
            run.last_error = "start cancelled"
            self._transition(run, RunStatus.CANCELLED)
            logger.info(f"Start of run {run.id} for agent {agent_id} was cancelled")
            raise
        except Exception as e:
            async with self._lock(run.id):
                run.last_error = str(e)
                self._transition(run, RunStatus.FAILED)
            logger.error(f"Failed to start run {run.id} for agent {agent_id}: {e}")
            raise

        async with self._lock(run.id):
            run.provider_handle = handle
            self._transition(run, RunStatus.IN_PROGRESS)

        logger.info(
            f"Started run {run.id} (agent: {agent.name}, thread: {thread_id}, "
            f"messages: {len(messages)})"
        )
        return run.id

    async def await_completion(
        self,
        run_id: str,
        on_status_change: Optional[StatusCallback] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ThreadSnapshot:
        """Wait for a run to finish, handling tool calls along the way.

        Args:
            run_id: Run returned by ``start``
            on_status_change: Called (or awaited) with every observed transition
            timeout: Seconds to wait before giving up (default: settings.run_timeout)
            cancel_token: Cooperative cancellation for the wait and the run

        Returns:
            Snapshot of the thread including the run's final agent message

        Raises:
            RunTerminatedError: If the run failed, was cancelled or expired
            RunTimeoutError: If the timeout elapsed first
            RunEngineUnavailable: If polling kept failing
        """
        run = self._get(run_id)
        async for event in self.stream(run_id, timeout=timeout, cancel_token=cancel_token):
            if on_status_change is not None:
                result = on_status_change(event)
                if inspect.isawaitable(result):
                    await result
        return self.threads.snapshot(run.thread_id)

    async def stream(
        self,
        run_id: str,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[RunEvent]:
        """Drive a run to a terminal state, yielding each status transition.

        The iterator ends normally when the run completes and raises for every
        other terminal outcome, exactly like ``await_completion``.
        """
        run = self._get(run_id)
        agent = self.agents.get(run.agent_id)
        limit = self.settings.run_timeout if timeout is None else timeout
        deadline = self.clock.now() + limit

        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled and not run.is_terminal:
                    event = await self._mark_cancelled(run, cancel_token.reason or "cancelled")
                    if event:
                        yield event

                if run.is_terminal:
                    self._raise_if_unsuccessful(run)
                    return

                state = await self._until_deadline(run, limit, deadline, self._poll(run))
                event = await self._observe(run, agent, state) if state is not None else None
                if event:
                    yield event

                if run.is_terminal:
                    self._raise_if_unsuccessful(run)
                    logger.info(f"Run {run.id} completed after {run.tool_rounds} tool round(s)")
                    return

                if run.status == RunStatus.REQUIRES_ACTION:
                    # Concurrent waiters on one run: only the claimant executes the calls
                    calls = await self._claim_required_calls(run)
                    if calls:
                        await self._until_deadline(
                            run, limit, deadline, self._handle_required_action(run, agent, calls)
                        )
                        yield RunEvent(
                            run_id=run.id,
                            previous=RunStatus.REQUIRES_ACTION,
                            status=run.status,
                            at=self.clock.now(),
                        )

                remaining = deadline - self.clock.now()
                if remaining <= 0:
                    await self._expire(run, limit)

                await self.clock.sleep(min(self.settings.run_poll_interval, remaining))
        except asyncio.CancelledError:
            logger.info(f"Wait for run {run.id} was cancelled; cancelling remote run")
            # No awaits here: the task is being cancelled
            if not run.is_terminal:
                run.last_error = "wait cancelled"
                self._transition(run, RunStatus.CANCELLED)
            self._cancel_in_background(run)
            raise

    async def submit_tool_outputs(self, run_id: str, outputs: Sequence[ToolOutput]) -> None:
        """Submit one output per required tool call.

        Raises:
            InvalidRunState: If the run is not in requires_action, or the outputs
                do not answer each requested call exactly once
        """
        await self._submit(self._get(run_id), outputs)

    async def cancel(self, run_id: str) -> None:
        """Cancel a run (best effort, does not wait for the provider)."""
        run = self._get(run_id)
        await self._mark_cancelled(run, "cancelled by caller")

    def get_run(self, run_id: str) -> Run:
        """Get a copy of a run record.

        Raises:
            UnknownRun: If the run id is unknown
        """
        return dataclasses.replace(self._get(run_id))

    def forget(self, run_id: str) -> None:
        """Drop the record of a finished run.

        Raises:
            UnknownRun: If the run id is unknown
            InvalidRunState: If the run has not reached a terminal state
        """
        run = self._get(run_id)
        if not run.is_terminal:
            raise InvalidRunState(
                f"Cannot forget run in '{run.status.value}'",
                run_id=run.id,
                thread_id=run.thread_id,
                agent_id=run.agent_id,
            )
        del self._runs[run_id]
        logger.debug(f"Forgot run {run_id}")

    async def drain(self) -> None:
        """Wait for background cancellation requests to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, run: Run, target: RunStatus) -> None:
        if not can_transition(run.status, target):
            raise InvalidRunState(
                f"Illegal run transition {run.status.value} -> {target.value}",
                run_id=run.id,
                thread_id=run.thread_id,
                agent_id=run.agent_id,
            )
        logger.debug(f"Run {run.id}: {run.status.value} -> {target.value}")
        run.status = target
        run.history = run.history + (target,)
        if target.is_terminal:
            run.completed_at = datetime.now(timezone.utc)
            # Per-run bookkeeping is only needed while the run can still change
            self._locks.pop(run.id, None)
            self._answered_calls.pop(run.id, None)
            self._claimed_calls.pop(run.id, None)

    def _lock(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            run = self._runs.get(run_id)
            if run is not None and not run.is_terminal:
                self._locks[run_id] = lock
        return lock

    async def _observe(self, run: Run, agent: Agent, state: ProviderRunState) -> Optional[RunEvent]:
        """Apply a polled provider state to the local run record."""
        async with self._lock(run.id):
            previous = run.status
            if run.is_terminal or state.status == previous:
                return None
            # The provider may still report queued right after create_run
            if state.status == RunStatus.QUEUED:
                return None
            if state.status == RunStatus.REQUIRES_ACTION:
                answered = self._answered_calls.get(run.id, set())
                if state.required_calls and all(c.id in answered for c in state.required_calls):
                    return None
                run.required_tool_calls = tuple(state.required_calls)
            elif state.status == RunStatus.COMPLETED:
                shape_error = self._check_response_shape(agent, state.output)
                if shape_error is not None:
                    run.last_error = shape_error
                    self._transition(run, RunStatus.FAILED)
                    logger.warning(f"Run {run.id} completed with a malformed answer: {shape_error}")
                    return RunEvent(run_id=run.id, previous=previous, status=run.status, at=self.clock.now())
                if state.output is not None:
                    await self.threads.append(
                        run.thread_id,
                        NewMessage.agent(
                            state.output,
                            metadata={"run_id": run.id, "agent_id": run.agent_id},
                        ),
                    )
            elif state.status.is_terminal:
                run.last_error = state.last_error

            self._transition(run, state.status)
            return RunEvent(run_id=run.id, previous=previous, status=run.status, at=self.clock.now())

    @staticmethod
    def _check_response_shape(agent: Agent, output: Optional[str]) -> Optional[str]:
        """Describe why a final answer violates the agent's response shape, if it does."""
        if agent.response_shape is None:
            return None
        try:
            agent.response_shape.model_validate_json(output or "")
        except ValidationError as e:
            return f"Final answer does not match {agent.response_shape.__name__}: {e}"
        return None

    async def _mark_cancelled(self, run: Run, reason: str) -> Optional[RunEvent]:
        async with self._lock(run.id):
            if run.is_terminal:
                return None
            previous = run.status
            run.last_error = reason
            self._transition(run, RunStatus.CANCELLED)
        self._cancel_in_background(run)
        return RunEvent(run_id=run.id, previous=previous, status=RunStatus.CANCELLED, at=self.clock.now())

    def _raise_if_unsuccessful(self, run: Run) -> None:
        if run.status == RunStatus.COMPLETED:
            return
        logger.error(f"Run {run.id} ended with status {run.status.value}: {run.last_error}")
        raise RunTerminatedError(
            run.status.value,
            run.last_error,
            run_id=run.id,
            thread_id=run.thread_id,
            agent_id=run.agent_id,
        )

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _until_deadline(self, run: Run, limit: float, deadline: float, awaitable: Awaitable[Any]) -> Any:
        """Await provider or tool work, expiring the run if the deadline passes first."""
        try:
            return await with_timeout(self.clock, awaitable, deadline - self.clock.now())
        except asyncio.TimeoutError:
            pass
        await self._expire(run, limit)

    async def _expire(self, run: Run, limit: float) -> None:
        await self._mark_cancelled(run, f"timed out after {limit:g}s")
        logger.warning(f"Run {run.id} timed out after {limit:g}s")
        raise RunTimeoutError(
            limit,
            run_id=run.id,
            thread_id=run.thread_id,
            agent_id=run.agent_id,
        )

    async def _claim_required_calls(self, run: Run) -> Tuple[ToolCall, ...]:
        """Reserve the pending tool calls for one waiter.

        Returns an empty tuple when another waiter already owns them.
        """
        async with self._lock(run.id):
            calls = run.required_tool_calls
            if run.status != RunStatus.REQUIRES_ACTION or not calls:
                return ()
            claimed = self._claimed_calls.setdefault(run.id, set())
            if any(call.id in claimed for call in calls):
                return ()
            claimed.update(call.id for call in calls)
            return calls

    async def _handle_required_action(self, run: Run, agent: Agent, calls: Sequence[ToolCall]) -> None:
        logger.info(
            f"Run {run.id} requires action: {len(calls)} tool call(s) "
            f"{[call.name for call in calls]}"
        )
        try:
            outputs = await asyncio.gather(
                *(self._execute_tool_call(run, agent, call) for call in calls)
            )
            await self._submit(run, outputs)
        except BaseException:
            # Let another waiter pick the calls up again
            self._claimed_calls.get(run.id, set()).difference_update(call.id for call in calls)
            raise

    async def _execute_tool_call(self, run: Run, agent: Agent, call: ToolCall) -> ToolOutput:
        if call.name not in agent.capabilities:
            error = UnknownCapability(call.name, available=list(agent.capabilities))
            logger.warning(f"Run {run.id} requested capability outside agent's set: {call.name}")
            return ToolOutput.failure(call.id, error)

        try:
            result = await self.capabilities.invoke(call.name, call.arguments)
        except (InvalidArguments, CapabilityExecutionError, UnknownCapability) as e:
            logger.warning(f"Tool call {call.id} ({call.name}) in run {run.id} failed: {e}")
            return ToolOutput.failure(call.id, e)
        return ToolOutput.success(call.id, result)

    async def _submit(self, run: Run, outputs: Sequence[ToolOutput]) -> None:
        async with self._lock(run.id):
            if run.status != RunStatus.REQUIRES_ACTION:
                raise InvalidRunState(
                    f"Cannot submit tool outputs to a run in '{run.status.value}'",
                    run_id=run.id,
                    thread_id=run.thread_id,
                    agent_id=run.agent_id,
                )

            expected = {call.id for call in run.required_tool_calls}
            submitted = [output.call_id for output in outputs]
            if len(submitted) != len(set(submitted)) or set(submitted) != expected:
                raise InvalidRunState(
                    f"Tool outputs {sorted(submitted)} do not answer required calls "
                    f"{sorted(expected)} exactly once",
                    run_id=run.id,
                    thread_id=run.thread_id,
                    agent_id=run.agent_id,
                )

            await self._call_provider(
                run,
                "submit_tool_outputs",
                self.provider.submit_tool_outputs,
                run.provider_handle,
                list(outputs),
            )
            self._answered_calls.setdefault(run.id, set()).update(expected)
            run.tool_rounds += 1
            run.required_tool_calls = ()
            self._transition(run, RunStatus.IN_PROGRESS)

        logger.debug(f"Submitted {len(outputs)} tool output(s) for run {run.id}")

    # ------------------------------------------------------------------
    # Provider access
    # ------------------------------------------------------------------

    async def _call_provider(
        self,
        run: Run,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Call the provider, retrying transient failures with backoff."""
        attempts = self.settings.provider_retry_attempts
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_wait_min,
                min=self.settings.provider_retry_wait_min,
                max=self.settings.provider_retry_wait_max,
            ),
            sleep=self.clock.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await func(*args)
        except TransientProviderError as e:
            raise RunEngineUnavailable(
                f"Provider {operation} failed after {attempts} attempt(s): {e.message}",
                run_id=run.id,
                thread_id=run.thread_id,
                agent_id=run.agent_id,
            ) from e

    async def _poll(self, run: Run) -> Optional[ProviderRunState]:
        try:
            return await self._call_provider(
                run, "get_status", self.provider.get_status, run.provider_handle
            )
        except InvalidRunState:
            # Providers may release a run once its end was reported to another waiter
            if run.is_terminal:
                return None
            raise

    def _cancel_in_background(self, run: Run) -> None:
        """Fire-and-forget provider cancellation."""
        if run.provider_handle is None:
            return
        task = asyncio.get_running_loop().create_task(self._cancel_remote(run))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_remote(self, run: Run) -> None:
        try:
            await self.provider.cancel(run.provider_handle)
            logger.info(f"Requested cancellation of run {run.id}")
        except Exception as e:
            logger.warning(f"Best-effort cancel of run {run.id} failed: {e}")

    def _get(self, run_id: str) -> Run:
        try:
            return self._runs[run_id]
        except KeyError:
            raise UnknownRun(run_id) from None
