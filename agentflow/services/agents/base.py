"""Agent definitions - Core records for registered agents."""

import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel


@dataclass
class AgentConfig:
    """Agent registration request.

    Attributes:
        name: Display name (also usable for lookups)
        instructions: System-level behavioral text
        model: Opaque model identifier (defaults to the configured model)
        temperature: Sampling temperature (defaults to the configured value)
        capabilities: Names of capabilities the agent may call
        response_shape: Optional pydantic model the final answer must conform to
        metadata: Open key/value bag
        max_tokens: Optional completion token limit
        parallel_tool_calls: Whether the model may request several tools at once
        agent_id: Explicit id; generated when omitted
    """
    name: str
    instructions: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    capabilities: List[str] = field(default_factory=list)
    response_shape: Optional[Type[BaseModel]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    max_tokens: Optional[int] = None
    parallel_tool_calls: bool = True
    agent_id: Optional[str] = None


@dataclass(frozen=True)
class Agent:
    """Immutable registered agent.

    Created once by ``AgentRegistry.register`` and never mutated; changing
    behavior means registering a new agent.
    """
    id: str
    name: str
    instructions: str
    model: str
    temperature: float
    capabilities: Tuple[str, ...] = ()
    response_shape: Optional[Type[BaseModel]] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    max_tokens: Optional[int] = None
    parallel_tool_calls: bool = True

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        default_model: str,
        default_temperature: float,
    ) -> "Agent":
        # Ordered set: keep first occurrence of each capability name
        capabilities = tuple(dict.fromkeys(config.capabilities))
        return cls(
            id=config.agent_id or f"agent_{uuid.uuid4().hex[:16]}",
            name=config.name,
            instructions=config.instructions,
            model=config.model or default_model,
            temperature=(
                config.temperature if config.temperature is not None else default_temperature
            ),
            capabilities=capabilities,
            response_shape=config.response_shape,
            metadata=MappingProxyType(dict(config.metadata)),
            max_tokens=config.max_tokens,
            parallel_tool_calls=config.parallel_tool_calls,
        )

    def __repr__(self) -> str:
        return f"<Agent(id='{self.id}', name='{self.name}', model='{self.model}')>"
