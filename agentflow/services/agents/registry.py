"""Agent Registry - Registration and discovery of agent definitions."""

import logging
from typing import Dict, List, Optional

from agentflow.core.config import Settings, settings as default_settings
from agentflow.core.exceptions import (
    DuplicateAgent,
    InvalidCapabilityReference,
    UnknownAgent,
)
from agentflow.services.agents.base import Agent, AgentConfig
from agentflow.services.capabilities.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Registry for agent definitions.

    Each registry owns its agents; it is handed to the run and workflow
    engines at construction time instead of being shared as global state.
    Agents are immutable, so there is no update operation.

    Usage:
        registry = AgentRegistry(capabilities)

        # Register an agent
        agent_id = registry.register(AgentConfig(
            name="summarizer",
            instructions="Summarize the conversation.",
        ))

        # Look it up
        agent = registry.get(agent_id)
    """

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        settings: Optional[Settings] = None,
    ):
        """Initialize registry.

        Args:
            capabilities: Registry used to validate capability references
            settings: Provides the default model and temperature
        """
        self.capabilities = capabilities
        self.settings = settings or default_settings
        self._agents: Dict[str, Agent] = {}

    def register(self, config: AgentConfig) -> str:
        """Register an agent.

        Args:
            config: Agent configuration

        Returns:
            The new agent id

        Raises:
            InvalidCapabilityReference: If a referenced capability is unregistered
            DuplicateAgent: If an explicit agent_id is already registered
        """
        agent = Agent.from_config(
            config,
            default_model=self.settings.openai_model_default,
            default_temperature=self.settings.default_temperature,
        )

        missing = self.capabilities.missing(agent.capabilities)
        if missing:
            raise InvalidCapabilityReference(missing, agent_id=agent.id)

        if agent.id in self._agents:
            raise DuplicateAgent(agent.id)

        self._agents[agent.id] = agent
        logger.info(
            f"Registered agent: {agent.name} (id: {agent.id}, model: {agent.model}, "
            f"capabilities: {list(agent.capabilities)})"
        )
        return agent.id

    def get(self, agent_id: str) -> Agent:
        """Get agent by id.

        Raises:
            UnknownAgent: If agent not found
        """
        try:
            return self._agents[agent_id]
        except KeyError:
            raise UnknownAgent(agent_id) from None

    def find_by_name(self, name: str) -> Agent:
        """Get the first registered agent with the given name.

        Raises:
            UnknownAgent: If no agent has this name
        """
        for agent in self._agents.values():
            if agent.name == name:
                return agent
        raise UnknownAgent(name)

    def list_agents(self) -> List[Agent]:
        """List all registered agents in registration order."""
        return list(self._agents.values())

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def deregister(self, agent_id: str) -> None:
        """Remove an agent. Removing an unknown agent is a no-op."""
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            logger.debug(f"Deregister of unknown agent ignored: {agent_id}")
            return
        logger.info(f"Deregistered agent: {agent.name} (id: {agent_id})")

    def __len__(self) -> int:
        return len(self._agents)
