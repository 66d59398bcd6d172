"""Capability Registry - Registration, lookup and invocation of tools."""

import asyncio
import inspect
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from agentflow.core.exceptions import (
    CapabilityExecutionError,
    DuplicateCapability,
    InvalidArguments,
    UnknownCapability,
)
from agentflow.services.capabilities.base import Capability, ToolDefinition

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Registry of the tools agents may call mid-run.

    Capabilities are registered once at startup and then shared read-only by
    every agent and run. Invocation validates arguments against the
    capability's input schema and delegates to its executor; the registry
    itself is never modified by an invocation.

    Usage:
        registry = CapabilityRegistry()
        registry.register(Capability("echo", "Echo input", EchoArgs, echo))

        result = await registry.invoke("echo", {"msg": "ping"})
    """

    def __init__(self, capabilities: Optional[Iterable[Capability]] = None):
        self._capabilities: Dict[str, Capability] = {}
        for capability in capabilities or ():
            self.register(capability)

    def register(self, capability: Capability) -> None:
        """Register a capability.

        Raises:
            DuplicateCapability: If the name is already registered
        """
        if capability.name in self._capabilities:
            raise DuplicateCapability(capability.name)
        self._capabilities[capability.name] = capability
        logger.info(f"Registered capability: {capability.name}")

    def lookup(self, name: str) -> Capability:
        """Get a capability by name.

        Raises:
            UnknownCapability: If the name is not registered
        """
        try:
            return self._capabilities[name]
        except KeyError:
            raise UnknownCapability(name, available=self.names()) from None

    def names(self) -> List[str]:
        """List registered capability names in registration order."""
        return list(self._capabilities.keys())

    def missing(self, names: Iterable[str]) -> List[str]:
        """Return the subset of ``names`` that is not registered."""
        return [name for name in names if name not in self._capabilities]

    def describe(self, names: Iterable[str]) -> List[ToolDefinition]:
        """Build provider tool definitions for ``names``, in the given order."""
        return [self.lookup(name).to_tool_definition() for name in names]

    async def invoke(
        self,
        name: str,
        args: Union[Mapping[str, Any], str, None],
    ) -> Any:
        """Validate arguments and run the capability's executor.

        Args:
            name: Capability name
            args: Argument mapping, or the raw JSON string sent by a provider

        Returns:
            Whatever the executor returns

        Raises:
            UnknownCapability: If the name is not registered
            InvalidArguments: If ``args`` is not valid JSON or fails validation
            CapabilityExecutionError: If the executor raises
        """
        capability = self.lookup(name)
        payload = self._decode_arguments(name, args)

        try:
            validated = capability.input_schema.model_validate(payload)
        except ValidationError as e:
            raise InvalidArguments(name, str(e)) from e

        try:
            if capability.is_async:
                result = await capability.executor(validated)
            else:
                result = await asyncio.to_thread(capability.executor, validated)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            logger.warning(f"Capability '{name}' raised {type(e).__name__}: {e}")
            raise CapabilityExecutionError(name, e) from e

        logger.debug(f"Capability '{name}' completed")
        return result

    @staticmethod
    def _decode_arguments(name: str, args: Union[Mapping[str, Any], str, None]) -> Any:
        if args is None:
            return {}
        if isinstance(args, str):
            if not args.strip():
                return {}
            try:
                return json.loads(args)
            except json.JSONDecodeError as e:
                raise InvalidArguments(name, f"arguments are not valid JSON: {e}") from e
        return dict(args)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def __repr__(self) -> str:
        return f"<CapabilityRegistry(capabilities={self.names()})>"
