"""Tool registry resolving the functions available to an assistant.

Tool *types* are registered once with a builder. Assistants are then bound to
configured instances of those types; enumerating an assistant's tools builds
each bound instance and flattens the functions they contribute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .base import ToolBuilder, ToolFunction, ToolImplementation

__all__ = [
    "DuplicateToolError",
    "ToolBinding",
    "ToolNotFoundError",
    "ToolRegistry",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool type whose name already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a binding references an unknown tool type."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Bindings
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolBinding:
    """A configured tool instance attached to an assistant.

    Attributes:
        tool_type: Name of the registered tool type.
        params: Configuration passed to the tool's builder.
        enabled: Whether the binding is currently active.
    """

    tool_type: str
    params: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True


class ToolRegistry:
    """Registry of tool types and per-assistant bindings.

    Example:
        registry = ToolRegistry()
        registry.register("timeofday", build_time_of_day)
        registry.bind("assistant-1", "timeofday")
        functions = registry.functions_for("assistant-1")
    """

    def __init__(self) -> None:
        self._builders: dict[str, ToolBuilder] = {}
        self._bindings: dict[str, list[ToolBinding]] = {}

    def register(self, tool_type: str, builder: ToolBuilder, *, allow_override: bool = False) -> None:
        """Register a tool type.

        Raises:
            DuplicateToolError: If the type is already registered and
                ``allow_override`` is False.
        """
        if tool_type in self._builders and not allow_override:
            raise DuplicateToolError(tool_type)
        self._builders[tool_type] = builder
        LOGGER.debug("Registered tool type: %s", tool_type)

    def has(self, tool_type: str) -> bool:
        return tool_type in self._builders

    def bind(
        self,
        assistant_id: str,
        tool_type: str,
        params: Mapping[str, Any] | None = None,
        *,
        enabled: bool = True,
    ) -> ToolBinding:
        """Attach a configured instance of *tool_type* to an assistant."""

        if tool_type not in self._builders:
            raise ToolNotFoundError(tool_type)
        binding = ToolBinding(tool_type=tool_type, params=dict(params or {}), enabled=enabled)
        self._bindings.setdefault(assistant_id, []).append(binding)
        return binding

    def unbind(self, assistant_id: str, tool_type: str) -> bool:
        bindings = self._bindings.get(assistant_id, [])
        remaining = [binding for binding in bindings if binding.tool_type != tool_type]
        self._bindings[assistant_id] = remaining
        return len(remaining) != len(bindings)

    def available_tools(self, assistant_id: str) -> list[ToolImplementation]:
        """Build every enabled tool bound to *assistant_id*."""

        implementations: list[ToolImplementation] = []
        for binding in self._bindings.get(assistant_id, ()):
            if not binding.enabled:
                continue
            builder = self._builders.get(binding.tool_type)
            if builder is None:
                LOGGER.warning(
                    "Assistant %s is bound to unknown tool type %s", assistant_id, binding.tool_type
                )
                continue
            implementations.append(builder(binding.params))
        return implementations

    def functions_for(self, assistant_id: str) -> list[ToolFunction]:
        """Return the flattened function list for *assistant_id*."""

        return [function for tool in self.available_tools(assistant_id) for function in tool.functions]
