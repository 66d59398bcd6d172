"""Capability (tool) definitions shared by every agent and run."""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Type, Union

from pydantic import BaseModel

# Executors receive the validated input model and return any JSON-serialisable
# value, either directly or from a coroutine.
Executor = Callable[[BaseModel], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Capability:
    """A named, invocable tool.

    Attributes:
        name: Unique key in the capability registry
        description: Human readable description sent to the model
        input_schema: Pydantic model describing the accepted arguments
        executor: Callable receiving a validated ``input_schema`` instance
    """
    name: str
    description: str
    input_schema: Type[BaseModel]
    executor: Executor = field(compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Capability name must not be empty")
        if not (isinstance(self.input_schema, type) and issubclass(self.input_schema, BaseModel)):
            raise ValueError(
                f"Capability '{self.name}' input_schema must be a pydantic BaseModel subclass"
            )
        if not callable(self.executor):
            raise ValueError(f"Capability '{self.name}' executor must be callable")

    @property
    def is_async(self) -> bool:
        """Whether the executor is a coroutine function."""
        return inspect.iscoroutinefunction(self.executor)

    def to_tool_definition(self) -> "ToolDefinition":
        """Render this capability as a provider-facing tool definition."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.input_schema.model_json_schema(),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """Provider-facing description of a capability (JSON schema parameters)."""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_openai(self) -> Dict[str, Any]:
        """Function tool payload in the OpenAI chat completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
