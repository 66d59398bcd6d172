"""Tests for AgentRegistry."""

import pytest
from pydantic import BaseModel

from agentflow.core.exceptions import (
    DuplicateAgent,
    InvalidCapabilityReference,
    UnknownAgent,
)
from agentflow.services.agents.base import AgentConfig


class Summary(BaseModel):
    text: str


class TestAgentRegistry:
    """Test agent registration, lookup and removal."""

    def test_register_applies_defaults(self, agents, test_settings):
        agent_id = agents.register(AgentConfig(name="writer", instructions="Write."))
        agent = agents.get(agent_id)

        assert agent_id.startswith("agent_")
        assert agent.model == test_settings.openai_model_default
        assert agent.temperature == test_settings.default_temperature
        assert agent.capabilities == ()
        assert agents.is_registered(agent_id)

    def test_register_keeps_explicit_values(self, agents):
        agent_id = agents.register(AgentConfig(
            name="summarizer",
            instructions="Summarize.",
            model="gpt-4o-mini",
            temperature=0.0,
            capabilities=["echo", "calculate", "echo"],
            response_shape=Summary,
            metadata={"team": "docs"},
        ))
        agent = agents.get(agent_id)

        assert agent.model == "gpt-4o-mini"
        assert agent.temperature == 0.0
        assert agent.capabilities == ("echo", "calculate")
        assert agent.response_shape is Summary
        assert agent.metadata["team"] == "docs"

    def test_agent_metadata_is_read_only(self, agents):
        agent = agents.get(agents.register(AgentConfig(
            name="a", instructions="x", metadata={"k": "v"},
        )))

        with pytest.raises(TypeError):
            agent.metadata["k"] = "changed"

    def test_unknown_capability_reference(self, agents):
        with pytest.raises(InvalidCapabilityReference) as exc_info:
            agents.register(AgentConfig(
                name="broken",
                instructions="x",
                capabilities=["echo", "teleport"],
            ))

        assert exc_info.value.missing == ["teleport"]
        assert len(agents) == 0

    def test_duplicate_explicit_id(self, agents):
        agents.register(AgentConfig(name="a", instructions="x", agent_id="agent_fixed"))

        with pytest.raises(DuplicateAgent):
            agents.register(AgentConfig(name="b", instructions="y", agent_id="agent_fixed"))

    def test_get_unknown(self, agents):
        with pytest.raises(UnknownAgent):
            agents.get("agent_missing")

    def test_find_by_name_and_list(self, agents):
        first = agents.register(AgentConfig(name="researcher", instructions="Research."))
        second = agents.register(AgentConfig(name="analyst", instructions="Analyze."))

        assert agents.find_by_name("analyst").id == second
        assert [agent.id for agent in agents.list_agents()] == [first, second]
        with pytest.raises(UnknownAgent):
            agents.find_by_name("nobody")

    def test_deregister_is_idempotent(self, agents):
        agent_id = agents.register(AgentConfig(name="temp", instructions="x"))

        agents.deregister(agent_id)
        agents.deregister(agent_id)

        assert not agents.is_registered(agent_id)
