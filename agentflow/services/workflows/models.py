"""Workflow step, task and result records."""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

# Builds a step prompt from the outputs of all previous steps
PromptBuilder = Callable[[List[str]], str]


@dataclass(frozen=True)
class PipelineStep:
    """One step of a sequential pipeline.

    Attributes:
        agent_id: Agent that runs this step
        prompt_builder: Static prompt, or callable receiving prior outputs
        process_output: Optional transform applied to the step's output
        extra_instructions: Run-scoped instructions for this step only
    """
    agent_id: str
    prompt_builder: Union[str, PromptBuilder]
    process_output: Optional[Callable[[str], str]] = None
    extra_instructions: Optional[str] = None

    def build_prompt(self, prior_outputs: Sequence[str]) -> str:
        if callable(self.prompt_builder):
            return self.prompt_builder(list(prior_outputs))
        return self.prompt_builder


@dataclass(frozen=True)
class StepOutput:
    index: int
    agent_id: str
    run_id: str
    output: str


@dataclass(frozen=True)
class PipelineResult:
    """Outputs of a completed pipeline, in step order."""
    thread_id: str
    steps: Tuple[StepOutput, ...]

    @property
    def outputs(self) -> List[str]:
        return [step.output for step in self.steps]

    @property
    def final_output(self) -> Optional[str]:
        return self.steps[-1].output if self.steps else None


@dataclass(frozen=True)
class ParallelTask:
    """One task of a parallel fan-out; ``key`` defaults to the agent id."""
    agent_id: str
    prompt: str
    key: Optional[str] = None

    @property
    def task_key(self) -> str:
        return self.key or self.agent_id


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one parallel task.

    Attributes:
        key: Task identity
        agent_id: Agent that ran the task
        success: Whether the run completed with an output
        output: Final agent message (on success)
        error: The exception that ended the task (on failure)
        thread_id: The task's private thread
        run_id: The task's run, if it was started
        execution_time_ms: Wall time spent on the task
    """
    key: str
    agent_id: str
    success: bool
    output: Optional[str] = None
    error: Optional[BaseException] = None
    thread_id: Optional[str] = None
    run_id: Optional[str] = None
    execution_time_ms: Optional[int] = None


class JudgeVerdict(BaseModel):
    """Structured judge answer. Approval is read from ``approved`` only."""

    approved: bool = Field(..., description="True if the output meets all criteria")
    feedback: str = Field("", description="Specific improvements needed, or a short justification")


@dataclass(frozen=True)
class FeedbackRound:
    iteration: int
    output: str
    verdict: JudgeVerdict


@dataclass(frozen=True)
class FeedbackResult:
    """Outcome of a worker/judge loop.

    ``approved=False`` after ``iterations == max_iterations`` means the
    iteration budget ran out; this is a normal result, not an error.
    """
    final_output: str
    iterations: int
    feedback: Tuple[str, ...]
    approved: bool
    rounds: Tuple[FeedbackRound, ...]
    thread_id: str

    @property
    def budget_exhausted(self) -> bool:
        return not self.approved
