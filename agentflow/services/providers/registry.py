"""Run Provider Registry for managing and selecting run providers."""

import logging
from typing import Dict, List, Optional, Type

from agentflow.core.exceptions import ConfigurationError
from agentflow.services.providers.base import BaseRunProvider
from agentflow.services.providers.openai_provider import OpenAIChatRunProvider
from agentflow.services.providers.scripted import ScriptedRunProvider

logger = logging.getLogger(__name__)

# Provider name constants
PROVIDER_OPENAI = "openai"
PROVIDER_SCRIPTED = "scripted"


class ProviderRegistry:
    """Registry for run providers with lazy initialization."""

    def __init__(self) -> None:
        self._providers: Dict[str, Type[BaseRunProvider]] = {}
        self._instances: Dict[str, Optional[BaseRunProvider]] = {}

    def register(self, name: str, provider_class: Type[BaseRunProvider]) -> None:
        """
        Register a run provider class.

        Args:
            name: Provider identifier (e.g., "openai", "scripted")
            provider_class: Class implementing BaseRunProvider
        """
        self._providers[name.lower()] = provider_class
        self._instances.pop(name.lower(), None)
        logger.info(f"Registered run provider: {name}")

    def get_provider(self, name: str) -> Optional[BaseRunProvider]:
        """
        Get provider instance with lazy initialization.

        Args:
            name: Provider identifier

        Returns:
            Provider instance or None if it is unknown or failed to initialize
        """
        name_lower = name.lower()

        # Check if already initialized (including failed attempts)
        if name_lower in self._instances:
            instance = self._instances[name_lower]
            if instance is None:
                logger.warning(f"Provider '{name}' was previously unavailable")
            return instance

        if name_lower not in self._providers:
            logger.error(f"Provider '{name}' is not registered. Available: {self.list_providers()}")
            return None

        provider_class = self._providers[name_lower]
        try:
            logger.info(f"Initializing run provider: {name}")
            instance = provider_class()
        except Exception as e:
            logger.warning("Provider '%s' unavailable (e.g. missing API key): %s", name, e)
            self._instances[name_lower] = None
            return None

        self._instances[name_lower] = instance
        return instance

    def list_providers(self) -> List[str]:
        """List all registered provider names."""
        return list(self._providers.keys())

    def is_available(self, name: str) -> bool:
        """Check if a provider is registered and initializes."""
        return self.get_provider(name) is not None


def default_provider_registry() -> ProviderRegistry:
    """Registry with the built-in providers registered."""
    registry = ProviderRegistry()
    registry.register(PROVIDER_OPENAI, OpenAIChatRunProvider)
    registry.register(PROVIDER_SCRIPTED, ScriptedRunProvider)
    return registry


def resolve_provider(name: str, registry: Optional[ProviderRegistry] = None) -> BaseRunProvider:
    """
    Look up a provider by name, failing loudly when it cannot be used.

    Raises:
        ConfigurationError: If the name is unknown or the provider failed to initialize
    """
    registry = registry or default_provider_registry()
    provider = registry.get_provider(name)
    if provider is None:
        raise ConfigurationError(
            f"Run provider '{name}' is unavailable. Registered providers: "
            f"{', '.join(registry.list_providers())}"
        )
    return provider
