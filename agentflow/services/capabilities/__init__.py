"""Capability Registry - named tools agents may call mid-run.

Usage:
    from agentflow.services.capabilities import Capability, CapabilityRegistry

    registry = CapabilityRegistry()
    registry.register(Capability("echo", "Echo input", EchoArgs, echo))
"""

from agentflow.services.capabilities.base import Capability, ToolDefinition
from agentflow.services.capabilities.builtin import register_builtin_capabilities
from agentflow.services.capabilities.registry import CapabilityRegistry

__all__ = [
    "Capability",
    "ToolDefinition",
    "CapabilityRegistry",
    "register_builtin_capabilities",
]
