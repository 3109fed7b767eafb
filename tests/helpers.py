"""Shared test helpers and stub classes.

Import from here instead of duplicating these stubs in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Sequence

from parley.ai.ai_types import (
    LLMMessage,
    ProviderChunk,
    TextDelta,
    TokenUsage,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
    TurnFinished,
)
from parley.ai.orchestration.channel import ExchangeStream
from parley.ai.orchestration.events import StreamEvent
from parley.ai.orchestration.orchestrator import ExchangeOutcome
from parley.ai.tools.base import ToolFunction
from parley.chat.message_model import Message
from parley.errors import ExchangeFailed


def text_turn(*parts: str, usage: TokenUsage | None = None) -> list[ProviderChunk]:
    """A provider turn that only streams text."""

    return [*(TextDelta(text=part) for part in parts), TurnFinished(finish_reason="stop", usage=usage)]


def tool_turn(
    name: str,
    arguments: Any = None,
    *,
    call_id: str = "call-1",
    text: Sequence[str] = (),
    split: int = 2,
) -> list[ProviderChunk]:
    """A provider turn requesting *name*, with its JSON arguments streamed in *split* fragments."""

    raw = json.dumps(arguments if arguments is not None else {})
    step = max(1, len(raw) // split)
    fragments = [raw[index : index + step] for index in range(0, len(raw), step)]
    chunks: list[ProviderChunk] = [TextDelta(text=part) for part in text]
    chunks.append(ToolCallStart(tool_call_id=call_id, tool_name=name))
    chunks.extend(ToolCallDelta(tool_call_id=call_id, tool_name=name, arguments_delta=part) for part in fragments)
    chunks.append(ToolCallComplete(tool_call_id=call_id, tool_name=name, arguments_text=raw))
    chunks.append(TurnFinished(finish_reason="tool_calls"))
    return chunks


@dataclass
class ProviderCall:
    system_prompt: str
    messages: list[LLMMessage]
    tools: list[ToolFunction] | None
    temperature: float | None
    user: str | None


class ScriptedProvider:
    """Completion provider replaying one scripted turn per call.

    A turn is a list of chunks; an exception instance inside the list is
    raised when reached, and an exception instance in place of a turn is
    raised when the stream is opened. Every chunk is preceded by a loop
    yield so consumers can interleave with the producer.
    """

    def __init__(self, turns: Iterable[Any], *, model_name: str = "test-model") -> None:
        self._turns = list(turns)
        self._model_name = model_name
        self.calls: list[ProviderCall] = []

    @property
    def model_name(self) -> str:
        return self._model_name

    async def stream_completion(
        self,
        system_prompt: str,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolFunction] | None = None,
        temperature: float | None = None,
        user: str | None = None,
    ) -> AsyncIterator[ProviderChunk]:
        self.calls.append(
            ProviderCall(
                system_prompt=system_prompt,
                messages=list(messages),
                tools=list(tools) if tools else None,
                temperature=temperature,
                user=user,
            )
        )
        if not self._turns:
            raise AssertionError("Provider called more times than scripted")
        turn = self._turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        for chunk in turn:
            await asyncio.sleep(0)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


@dataclass
class RecordingTool:
    """Tool stub recording every invocation."""

    result: str = "ok"
    error: Exception | None = None
    calls: list[tuple[list[Message], str, dict[str, Any]]] = field(default_factory=list)

    def __call__(self, history: Sequence[Message], assistant_id: str, args: Any) -> str:
        self.calls.append((list(history), assistant_id, dict(args)))
        if self.error is not None:
            raise self.error
        return self.result


def make_tool(name: str, recorder: RecordingTool, *, require_confirm: bool = False) -> ToolFunction:
    return ToolFunction(
        name=name,
        description=f"{name} stub",
        invoke=recorder,
        parameters={"type": "object", "properties": {}},
        require_confirm=require_confirm,
    )


class RecordingSink:
    """Side-effect sink capturing saved messages and recorded outcomes."""

    def __init__(self, *, fail_save: bool = False, fail_record: bool = False) -> None:
        self.saved: list[Message] = []
        self.outcomes: list[ExchangeOutcome] = []
        self._fail_save = fail_save
        self._fail_record = fail_record

    async def save(self, message: Message) -> None:
        if self._fail_save:
            raise RuntimeError("save failed")
        self.saved.append(message)

    async def record(self, outcome: ExchangeOutcome) -> None:
        if self._fail_record:
            raise RuntimeError("record failed")
        self.outcomes.append(outcome)


async def collect(stream: ExchangeStream[ExchangeOutcome]) -> tuple[list[StreamEvent], ExchangeFailed | None]:
    """Drain *stream*; return its events and the terminal error, if any."""

    events: list[StreamEvent] = []
    try:
        async for event in stream:
            events.append(event)
    except ExchangeFailed as exc:
        return events, exc
    return events, None
