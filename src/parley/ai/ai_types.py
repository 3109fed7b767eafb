"""Shared typing contracts for model providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Literal, Protocol, Sequence, Union

if TYPE_CHECKING:
    from .tools.base import ToolFunction


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


# -----------------------------------------------------------------------------
# Provider-neutral conversation turns
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Any


@dataclass(slots=True)
class LLMMessage:
    """One role-tagged turn sent to a provider.

    Plain turns only carry ``content``. A synthesized assistant tool-call turn
    carries ``tool_call``; the matching tool-result turn carries
    ``tool_call_id``/``tool_name`` with the result text as ``content``.
    """

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_call: ToolCall | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None


# -----------------------------------------------------------------------------
# Provider-neutral stream chunks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallStart:
    tool_call_id: str
    tool_name: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    tool_call_id: str
    arguments_delta: str
    tool_name: str = ""


@dataclass(slots=True, frozen=True)
class ToolCallComplete:
    """Final view of a tool call; ``arguments`` is set when the backend parsed them."""

    tool_call_id: str
    tool_name: str
    arguments: Any | None = None
    arguments_text: str | None = None


@dataclass(slots=True, frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True, frozen=True)
class TurnFinished:
    finish_reason: str | None = None
    usage: TokenUsage | None = None


ProviderChunk = Union[TextDelta, ToolCallStart, ToolCallDelta, ToolCallComplete, TurnFinished]


class CompletionProvider(Protocol):
    """Capability every backend adapter exposes to the orchestrator."""

    @property
    def model_name(self) -> str:
        ...

    def stream_completion(
        self,
        system_prompt: str,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence["ToolFunction"] | None = None,
        temperature: float | None = None,
        user: str | None = None,
    ) -> AsyncIterator[ProviderChunk]:
        """Stream a tool-aware completion as provider-neutral chunks."""
        ...


__all__ = [
    "CompletionProvider",
    "LLMMessage",
    "ProviderChunk",
    "TextDelta",
    "TokenCounterProtocol",
    "TokenUsage",
    "ToolCall",
    "ToolCallComplete",
    "ToolCallDelta",
    "ToolCallStart",
    "TurnFinished",
]
