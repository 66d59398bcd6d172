"""Run providers with strategy pattern."""

from agentflow.services.providers.base import BaseRunProvider, ProviderRunState
from agentflow.services.providers.openai_provider import OpenAIChatRunProvider
from agentflow.services.providers.registry import (
    PROVIDER_OPENAI,
    PROVIDER_SCRIPTED,
    ProviderRegistry,
    default_provider_registry,
    resolve_provider,
)
from agentflow.services.providers.scripted import ScriptedRunProvider, ScriptStep

__all__ = [
    "BaseRunProvider",
    "ProviderRunState",
    "OpenAIChatRunProvider",
    "ScriptedRunProvider",
    "ScriptStep",
    "ProviderRegistry",
    "PROVIDER_OPENAI",
    "PROVIDER_SCRIPTED",
    "default_provider_registry",
    "resolve_provider",
]
