"""Agent Registry - named agent definitions (model, instructions, capabilities).

Usage:
    from agentflow.services.agents import AgentConfig, AgentRegistry

    agents = AgentRegistry(capabilities)
    agent_id = agents.register(AgentConfig(name="writer", instructions="..."))
"""

from agentflow.services.agents.base import Agent, AgentConfig
from agentflow.services.agents.registry import AgentRegistry

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentRegistry",
]
