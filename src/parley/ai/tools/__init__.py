"""Tool contracts, registry, and built-in tools."""

from .base import ToolBuilder, ToolFunction, ToolImplementation
from .registry import DuplicateToolError, ToolBinding, ToolNotFoundError, ToolRegistry
from .time_of_day import TIME_OF_DAY_NAME, build_time_of_day

BUILTIN_TOOLS: dict[str, ToolBuilder] = {
    "timeofday": build_time_of_day,
}


def default_registry() -> ToolRegistry:
    """Return a registry with every built-in tool type registered."""

    registry = ToolRegistry()
    for tool_type, builder in BUILTIN_TOOLS.items():
        registry.register(tool_type, builder)
    return registry


__all__ = [
    "BUILTIN_TOOLS",
    "DuplicateToolError",
    "TIME_OF_DAY_NAME",
    "ToolBinding",
    "ToolBuilder",
    "ToolFunction",
    "ToolImplementation",
    "ToolNotFoundError",
    "ToolRegistry",
    "build_time_of_day",
    "default_registry",
]
