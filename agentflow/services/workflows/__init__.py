"""Workflow Engine - pipelines, parallel fan-out and feedback loops."""

from agentflow.services.workflows.engine import WorkflowEngine, parse_verdict
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

__all__ = [
    "WorkflowEngine",
    "parse_verdict",
    "FeedbackResult",
    "FeedbackRound",
    "JudgeVerdict",
    "ParallelTask",
    "PipelineResult",
    "PipelineStep",
    "StepOutput",
    "TaskResult",
]
