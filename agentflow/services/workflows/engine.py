"""Workflow Engine - Composes agent runs into multi-agent workflows.

Supports three execution patterns:
1. Sequential pipeline: steps share one thread, each output feeds the next
2. Parallel fan-out/fan-in: every task gets its own thread, all run at once
3. Worker/judge feedback loop: the worker revises until the judge approves

The thread asymmetry is intentional: a pipeline's steps are meant to see each
other's messages, while parallel tasks must not interleave.
"""

import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from agentflow.core.config import Settings, settings as default_settings
from agentflow.core.exceptions import EmptyRunOutput, WorkflowTimeoutError
from agentflow.core.prompts import FEEDBACK_REVISION_PROMPT, JUDGE_PROMPT
from agentflow.services.agents.registry import AgentRegistry
from agentflow.services.runs.clock import with_timeout
from agentflow.services.runs.engine import RunEngine
from agentflow.services.threads.models import MessageRole, NewMessage, ThreadSnapshot
from agentflow.services.threads.store import ThreadStore
from agentflow.services.workflows.models import (
    FeedbackResult,
    FeedbackRound,
    JudgeVerdict,
    ParallelTask,
    PipelineResult,
    PipelineStep,
    StepOutput,
    TaskResult,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class WorkflowEngine:
    """Multi-agent workflow patterns built on the run engine.

    Example:
        workflows = WorkflowEngine(agents, threads, runs)

        # Sequential pipeline
        result = await workflows.run_pipeline([
            PipelineStep(summarizer_id, "Summarize: Hello world"),
            PipelineStep(translator_id, lambda prior: f"Translate: {prior[-1]}"),
        ])

        # Parallel fan-out
        results = await workflows.run_parallel([
            ParallelTask(researcher_id, "Find sources"),
            ParallelTask(analyst_id, "Analyze trends"),
        ])

        # Feedback loop
        outcome = await workflows.run_feedback_loop(
            writer_id, judge_id, "Write a haiku", "5-7-5 syllables"
        )
    """

    def __init__(
        self,
        agents: AgentRegistry,
        threads: ThreadStore,
        runs: RunEngine,
        settings: Optional[Settings] = None,
    ):
        self.agents = agents
        self.threads = threads
        self.runs = runs
        self.settings = settings or default_settings
        logger.debug("Initialized WorkflowEngine")

    async def run_agent(
        self,
        agent_id: str,
        thread_id: str,
        prompt: str,
        extra_instructions: Optional[str] = None,
        run_timeout: Optional[float] = None,
    ) -> Tuple[str, str]:
        """Append a user prompt, run one agent on the thread and return its answer.

        Returns:
            Tuple of (run_id, output)

        Raises:
            EmptyRunOutput: If the run completed without an agent message
        """
        await self.threads.append(thread_id, NewMessage.user(prompt))
        run_id = await self.runs.start(agent_id, thread_id, extra_instructions)
        snapshot = await self.runs.await_completion(run_id, timeout=run_timeout)
        return run_id, self._run_output(snapshot, run_id, agent_id)

    # ------------------------------------------------------------------
    # Sequential pipeline
    # ------------------------------------------------------------------

    async def run_pipeline(
        self,
        steps: Sequence[PipelineStep],
        thread_id: Optional[str] = None,
        timeout: Optional[float] = None,
        run_timeout: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        """Run steps one after another on one shared thread.

        Each step's prompt is built from the outputs of all previous steps.
        The first failing step stops the pipeline and its error propagates;
        later steps never start.

        Args:
            steps: Pipeline steps in execution order
            thread_id: Shared thread (created when omitted)
            timeout: Deadline for the whole pipeline, in seconds
            run_timeout: Per-run timeout passed to the run engine
            progress_callback: Optional callback(progress_percent, message)

        Returns:
            PipelineResult with one output per step

        Raises:
            UnknownAgent: If any step references an unregistered agent
            WorkflowTimeoutError: If the pipeline deadline fires
        """
        for step in steps:
            self.agents.get(step.agent_id)

        if thread_id is None:
            thread_id = self.threads.create({"type": "pipeline"})

        pipeline = self._run_pipeline_steps(steps, thread_id, run_timeout, progress_callback)
        try:
            return await with_timeout(self.runs.clock, pipeline, timeout)
        except asyncio.TimeoutError:
            logger.error(f"Pipeline on thread {thread_id} timed out after {timeout}s")
            raise WorkflowTimeoutError(timeout, thread_id=thread_id) from None

    async def _run_pipeline_steps(
        self,
        steps: Sequence[PipelineStep],
        thread_id: str,
        run_timeout: Optional[float],
        progress_callback: Optional[ProgressCallback],
    ) -> PipelineResult:
        outputs: List[StepOutput] = []
        total = len(steps)

        for index, step in enumerate(steps):
            if progress_callback:
                progress_callback(
                    int(index / total * 100),
                    f"Executing {step.agent_id} ({index + 1}/{total})...",
                )

            prompt = step.build_prompt([previous.output for previous in outputs])
            try:
                run_id, output = await self.run_agent(
                    step.agent_id,
                    thread_id,
                    prompt,
                    extra_instructions=step.extra_instructions,
                    run_timeout=run_timeout,
                )
            except Exception as e:
                logger.error(
                    f"Pipeline step {index + 1}/{total} ({step.agent_id}) failed: {e}. "
                    f"Skipping remaining {total - index - 1} step(s)",
                    exc_info=True,
                )
                if progress_callback:
                    progress_callback(100, f"Agent {step.agent_id} failed: {e}")
                raise

            if step.process_output is not None:
                output = step.process_output(output)

            outputs.append(StepOutput(index=index, agent_id=step.agent_id, run_id=run_id, output=output))
            logger.info(f"Pipeline step {index + 1}/{total} ({step.agent_id}) completed")

        if progress_callback:
            progress_callback(100, f"Sequential execution complete: {len(outputs)} agents executed")

        return PipelineResult(thread_id=thread_id, steps=tuple(outputs))

    # ------------------------------------------------------------------
    # Parallel fan-out / fan-in
    # ------------------------------------------------------------------

    async def run_parallel(
        self,
        tasks: Sequence[ParallelTask],
        timeout: Optional[float] = None,
        run_timeout: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, TaskResult]:
        """Run tasks concurrently, each on its own thread.

        A failing task does not cancel its siblings; every task gets a
        TaskResult and the caller decides how to aggregate them. When the
        batch ``timeout`` fires, tasks still running are cancelled and
        reported as failed with WorkflowTimeoutError.

        Args:
            tasks: Tasks to run; task keys must be unique
            timeout: Deadline for the whole batch, in seconds
            run_timeout: Per-run timeout passed to the run engine
            progress_callback: Optional callback(progress_percent, message)

        Returns:
            Dictionary mapping task keys to their results

        Raises:
            ValueError: If two tasks share a key
        """
        if not tasks:
            return {}

        keys = [task.task_key for task in tasks]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise ValueError(f"Parallel task keys must be unique, duplicated: {duplicates}")

        if progress_callback:
            progress_callback(0, f"Starting parallel execution of {len(tasks)} agents...")

        started: Dict[str, Dict[str, Optional[str]]] = {key: {} for key in keys}
        pending_tasks = {
            task.task_key: asyncio.create_task(
                self._run_parallel_task(task, started[task.task_key], run_timeout, progress_callback)
            )
            for task in tasks
        }

        try:
            await with_timeout(self.runs.clock, asyncio.wait(pending_tasks.values()), timeout)
        except asyncio.TimeoutError:
            pass
        except asyncio.CancelledError:
            for running in pending_tasks.values():
                running.cancel()
            raise
        pending = {running for running in pending_tasks.values() if not running.done()}

        if pending:
            logger.warning(
                f"Parallel batch timed out after {timeout}s; cancelling {len(pending)} task(s)"
            )
            for running in pending:
                running.cancel()
            # Local unwinding only; provider cancellation continues in the background
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, TaskResult] = {}
        for task in tasks:
            key = task.task_key
            running = pending_tasks[key]
            if running in pending:
                info = started[key]
                results[key] = TaskResult(
                    key=key,
                    agent_id=task.agent_id,
                    success=False,
                    error=WorkflowTimeoutError(
                        timeout,
                        run_id=info.get("run_id"),
                        thread_id=info.get("thread_id"),
                        agent_id=task.agent_id,
                    ),
                    thread_id=info.get("thread_id"),
                    run_id=info.get("run_id"),
                )
            else:
                results[key] = running.result()

        successful = sum(1 for r in results.values() if r.success)
        total = len(results)

        if progress_callback:
            progress_callback(100, f"Parallel execution complete: {successful}/{total} agents succeeded")

        logger.info(f"Parallel execution completed: {successful}/{total} agents succeeded")
        return results

    async def _run_parallel_task(
        self,
        task: ParallelTask,
        started: Dict[str, Optional[str]],
        run_timeout: Optional[float],
        progress_callback: Optional[ProgressCallback],
    ) -> TaskResult:
        key = task.task_key
        start_time = self.runs.clock.now()
        thread_id: Optional[str] = None
        run_id: Optional[str] = None

        try:
            thread_id = self.threads.create({"type": "parallel_task", "task": key})
            started["thread_id"] = thread_id
            await self.threads.append(thread_id, NewMessage.user(task.prompt))
            run_id = await self.runs.start(task.agent_id, thread_id)
            started["run_id"] = run_id

            if progress_callback:
                progress_callback(30, f"Agent {key} started")

            snapshot = await self.runs.await_completion(run_id, timeout=run_timeout)
            output = self._run_output(snapshot, run_id, task.agent_id)
        except Exception as e:
            execution_time_ms = int((self.runs.clock.now() - start_time) * 1000)
            logger.error(f"Parallel task '{key}' failed after {execution_time_ms}ms: {e}")
            if progress_callback:
                progress_callback(70, f"Agent {key} failed")
            return TaskResult(
                key=key,
                agent_id=task.agent_id,
                success=False,
                error=e,
                thread_id=thread_id,
                run_id=run_id,
                execution_time_ms=execution_time_ms,
            )

        execution_time_ms = int((self.runs.clock.now() - start_time) * 1000)
        if progress_callback:
            progress_callback(70, f"Agent {key} succeeded")
        return TaskResult(
            key=key,
            agent_id=task.agent_id,
            success=True,
            output=output,
            thread_id=thread_id,
            run_id=run_id,
            execution_time_ms=execution_time_ms,
        )

    # ------------------------------------------------------------------
    # Worker / judge feedback loop
    # ------------------------------------------------------------------

    async def run_feedback_loop(
        self,
        worker_id: str,
        judge_id: str,
        prompt: str,
        criteria: str,
        max_iterations: Optional[int] = None,
        thread_id: Optional[str] = None,
        run_timeout: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> FeedbackResult:
        """Let a worker revise its output until a judge approves it.

        The first worker prompt is ``prompt`` verbatim; later prompts are
        prefixed with the judge's previous feedback. The judge is asked for a
        JSON ``JudgeVerdict``; only its ``approved`` field decides approval.
        Running out of iterations returns ``approved=False``.

        Args:
            worker_id: Agent producing the output
            judge_id: Agent evaluating the output
            prompt: Initial worker task
            criteria: Judging criteria
            max_iterations: Worker/judge round trips (default: settings)
            thread_id: Shared thread (created when omitted)
            run_timeout: Per-run timeout passed to the run engine
            progress_callback: Optional callback(progress_percent, message)

        Returns:
            FeedbackResult with the last output and all feedback
        """
        if max_iterations is None:
            max_iterations = self.settings.feedback_max_iterations
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

        self.agents.get(worker_id)
        self.agents.get(judge_id)

        if thread_id is None:
            thread_id = self.threads.create({"type": "feedback_loop"})

        rounds: List[FeedbackRound] = []
        output = ""

        for iteration in range(1, max_iterations + 1):
            if progress_callback:
                progress_callback(
                    int((iteration - 1) / max_iterations * 100),
                    f"Iteration {iteration}/{max_iterations}: running worker",
                )

            if rounds:
                worker_prompt = FEEDBACK_REVISION_PROMPT.format(
                    feedback=rounds[-1].verdict.feedback,
                    prompt=prompt,
                )
            else:
                worker_prompt = prompt

            _, output = await self.run_agent(worker_id, thread_id, worker_prompt, run_timeout=run_timeout)

            judge_prompt = JUDGE_PROMPT.format(criteria=criteria, output=output)
            _, judge_answer = await self.run_agent(judge_id, thread_id, judge_prompt, run_timeout=run_timeout)

            verdict = parse_verdict(judge_answer)
            rounds.append(FeedbackRound(iteration=iteration, output=output, verdict=verdict))
            logger.info(
                f"Feedback loop iteration {iteration}/{max_iterations}: "
                f"{'approved' if verdict.approved else 'not approved'}"
            )

            if verdict.approved:
                break

        approved = rounds[-1].verdict.approved
        if not approved:
            logger.warning(
                f"Feedback loop exhausted {max_iterations} iteration(s) without approval "
                f"(thread: {thread_id})"
            )

        if progress_callback:
            progress_callback(100, f"Feedback loop finished after {len(rounds)} iteration(s)")

        return FeedbackResult(
            final_output=output,
            iterations=len(rounds),
            feedback=tuple(r.verdict.feedback for r in rounds),
            approved=approved,
            rounds=tuple(rounds),
            thread_id=thread_id,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _run_output(snapshot: ThreadSnapshot, run_id: str, agent_id: str) -> str:
        """Final agent message written by ``run_id``."""
        for message in reversed(snapshot.messages):
            if message.role == MessageRole.AGENT and message.metadata.get("run_id") == run_id:
                return message.content
        raise EmptyRunOutput(
            "Run completed without an agent message",
            run_id=run_id,
            thread_id=snapshot.thread_id,
            agent_id=agent_id,
        )


def parse_verdict(answer: str) -> JudgeVerdict:
    """Parse a judge answer into a JudgeVerdict.

    Markdown code fences are stripped first. An answer that is not a valid
    verdict counts as not approved, with the raw text kept as feedback.
    """
    cleaned = re.sub(r"```(?:json)?\s*|\s*```", "", answer).strip()
    try:
        return JudgeVerdict.model_validate_json(cleaned)
    except ValidationError:
        logger.warning(f"Judge answer is not a structured verdict: {answer[:200]!r}")
        return JudgeVerdict(approved=False, feedback=answer.strip())
