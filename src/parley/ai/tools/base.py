"""Tool function contracts consumed by the exchange orchestrator."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Sequence, Union, cast

from openai.types.chat import ChatCompletionToolParam

if TYPE_CHECKING:
    from ...chat.message_model import Message

ToolInvoke = Callable[["Sequence[Message]", str, Mapping[str, Any]], Union[Awaitable[str], str]]

_EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


@dataclass(slots=True)
class ToolFunction:
    """A named capability the model may call during a turn.

    Attributes:
        name: Identifier the model uses to request the tool.
        description: Human-readable summary passed to the model.
        parameters: JSON Schema describing the arguments object.
        invoke: Callable receiving ``(history, assistant_id, args)``; may be async.
        require_confirm: Whether a human must approve each call before it runs.
    """

    name: str
    description: str
    invoke: ToolInvoke
    parameters: Mapping[str, Any] | None = None
    require_confirm: bool = False

    async def call(self, history: Sequence["Message"], assistant_id: str, args: Mapping[str, Any]) -> str:
        """Run the tool and return its result text."""

        result = self.invoke(history, assistant_id, args)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else str(result)

    @property
    def schema(self) -> Mapping[str, Any]:
        return self.parameters or _EMPTY_SCHEMA

    def as_openai_tool(self) -> ChatCompletionToolParam:
        """Return an OpenAI-compatible function tool spec."""

        return cast(
            ChatCompletionToolParam,
            {
                "type": "function",
                "function": {
                    "name": self.name,
                    "description": self.description or f"Tool {self.name}",
                    "parameters": dict(self.schema),
                },
            },
        )

    def as_anthropic_tool(self) -> Dict[str, Any]:
        """Return an Anthropic Messages API tool spec."""

        return {
            "name": self.name,
            "description": self.description or f"Tool {self.name}",
            "input_schema": dict(self.schema),
        }


@dataclass(slots=True)
class ToolImplementation:
    """A bundle of functions contributed by one configured tool."""

    functions: list[ToolFunction] = field(default_factory=list)


ToolBuilder = Callable[[Mapping[str, Any]], ToolImplementation]


__all__ = ["ToolBuilder", "ToolFunction", "ToolImplementation", "ToolInvoke"]
