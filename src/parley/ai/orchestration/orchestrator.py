"""Streaming exchange orchestration.

One exchange turns a user message into an assistant message. The
orchestrator drives a provider's chunk stream, forwards text to the
transport as it arrives, runs requested tools one at a time and re-enters
the provider with their results, and pauses on tools that need a human
decision. Whatever way the exchange ends, the assistant message is handed to
the side-effect sink exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence

from ...chat.message_model import ConfirmRequest, ConfirmResponse, Message
from ...errors import (
    ToolArgumentsError,
    ToolExecutionError,
    ToolLoopLimitExceeded,
    TransportClosed,
    UnknownToolError,
)
from ...services import telemetry as telemetry_service
from ...utils import logging as logging_utils
from ..ai_types import (
    CompletionProvider,
    LLMMessage,
    ProviderChunk,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
    TurnFinished,
)
from ..tools.base import ToolFunction
from .channel import EventChannel, ExchangeStream
from .events import ConfirmRequestEvent, DeltaEvent, ResponseEvent, StreamEvent, SummaryEvent

LOGGER = logging.getLogger(__name__)

DENIED_TOOL_RESULT = "User denied access to function"

SummarizeHook = Callable[[Message], Awaitable[str]]


class ExchangeState(Enum):
    """Lifecycle of a single exchange."""

    STREAMING = auto()
    TOOL_PENDING_EXECUTION = auto()
    TOOL_PENDING_CONFIRMATION = auto()
    DONE = auto()
    FAILED = auto()


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Per-assistant settings applied to every exchange.

    Attributes:
        assistant_id: Owner id passed to tool invocations.
        system_prompt: Prepended to every provider call.
        temperature: Sampling temperature forwarded to the provider.
        max_tool_iterations: Cap on executed tool calls per exchange; 0 disables the cap.
        forward_user_id: Whether the end-user id is sent to the provider.
    """

    assistant_id: str
    system_prompt: str = ""
    temperature: float | None = None
    max_tool_iterations: int = 0
    forward_user_id: bool = False


@dataclass(slots=True)
class ExchangeRequest:
    """Context for one exchange.

    Attributes:
        conversation_id: Conversation the assistant reply belongs to.
        parent_id: Id of the message that triggered the exchange.
        llm_messages: Budgeted provider turns, oldest first.
        history: Full reconstructed branch, oldest first; handed to tools.
        user_id: End user driving the exchange.
    """

    conversation_id: str
    parent_id: str
    llm_messages: list[LLMMessage]
    history: list[Message] = field(default_factory=list)
    user_id: str | None = None


@dataclass(slots=True)
class ExchangeOutcome:
    """Final report of an exchange, handed to the side-effect sink."""

    message: Message
    state: ExchangeState
    error: BaseException | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    summary: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is ExchangeState.DONE

    @property
    def pending_confirmation(self) -> ConfirmRequest | None:
        return self.message.confirm_request


class SideEffectSink(Protocol):
    """Persistence and audit hooks run once per assistant message."""

    async def save(self, message: Message) -> None:
        ...

    async def record(self, outcome: ExchangeOutcome) -> None:
        ...


class _ExchangeRun:
    """Mutable state of one exchange; never shared between exchanges."""

    def __init__(
        self,
        orchestrator: "StreamOrchestrator",
        request: ExchangeRequest,
        channel: EventChannel,
        on_summarize: SummarizeHook | None,
    ) -> None:
        self._orchestrator = orchestrator
        self._request = request
        self._channel = channel
        self._on_summarize = on_summarize
        self.assistant = Message(
            role="assistant",
            content="",
            conversation_id=request.conversation_id,
            parent=request.parent_id,
        )
        self.state = ExchangeState.STREAMING
        self.tool_calls: list[ToolCall] = []
        self.usage = TokenUsage()
        self.summary: str | None = None
        self.executed_tools = 0
        self._held: list[str] = []

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self, opening: Callable[[], Awaitable[AsyncIterator[ProviderChunk]]]) -> ExchangeOutcome:
        with logging_utils.bind_exchange(self.assistant.id):
            return await self._drive(opening)

    async def _drive(self, opening: Callable[[], Awaitable[AsyncIterator[ProviderChunk]]]) -> ExchangeOutcome:
        error: BaseException | None = None
        cancelled: asyncio.CancelledError | None = None
        try:
            await self._emit(ResponseEvent(message=replace(self.assistant)))
            chunks = await opening()
            while True:
                call = await self._consume(chunks)
                if call is None:
                    break
                function = self._orchestrator.find_tool(call.name)
                if function is None:
                    raise UnknownToolError(call.name)
                self._held.clear()
                self.tool_calls.append(call)
                if function.require_confirm:
                    await self._request_confirmation(call)
                    break
                result = await self.execute(function, call)
                chunks = self._orchestrator.send_tool_result(self._request, call, result)
            if self.state is not ExchangeState.TOOL_PENDING_CONFIRMATION:
                await self._summarize()
            self._transition(ExchangeState.DONE)
        except TransportClosed as exc:
            LOGGER.info("Client disconnected from exchange %s", self.assistant.id)
            self._held.clear()
            error = exc
            self._transition(ExchangeState.FAILED)
        except asyncio.CancelledError as exc:
            cancelled = exc
            error = exc
            self._transition(ExchangeState.FAILED)
        except Exception as exc:
            LOGGER.exception("Exchange %s failed", self.assistant.id)
            error = exc
            self._transition(ExchangeState.FAILED)

        if self._held:
            # Undelivered text from the failed turn is still persisted.
            self.assistant.content += "".join(self._held)
            self._held.clear()
        self._channel.finish(error if not isinstance(error, (TransportClosed, asyncio.CancelledError)) else None)
        outcome = ExchangeOutcome(
            message=self.assistant,
            state=self.state,
            error=error,
            tool_calls=list(self.tool_calls),
            usage=self.usage,
            summary=self.summary,
        )
        await self._orchestrator.complete(outcome)
        if cancelled is not None:
            raise cancelled
        return outcome

    # ------------------------------------------------------------------
    # Turn consumption
    # ------------------------------------------------------------------

    async def _consume(self, chunks: AsyncIterator[ProviderChunk]) -> ToolCall | None:
        """Drain one provider turn; return the tool call it requested, if any."""

        self._transition(ExchangeState.STREAMING)
        try:
            return await self._fold_turn(chunks)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _fold_turn(self, chunks: AsyncIterator[ProviderChunk]) -> ToolCall | None:
        tool_name = ""
        tool_call_id = ""
        tool_args: object | None = None
        args_text = ""
        async for chunk in chunks:
            if isinstance(chunk, TextDelta):
                # Held until the turn is known to be plain text; tool-call turns drop it.
                self._held.append(chunk.text)
            elif isinstance(chunk, ToolCallStart):
                if tool_name and chunk.tool_call_id != tool_call_id:
                    LOGGER.warning(
                        "Ignoring additional tool call %s (%s); one call per turn is supported",
                        chunk.tool_name,
                        chunk.tool_call_id,
                    )
                    continue
                tool_name = chunk.tool_name
                tool_call_id = chunk.tool_call_id
            elif isinstance(chunk, ToolCallDelta):
                if tool_name and chunk.tool_call_id != tool_call_id:
                    continue
                if not tool_name:
                    tool_name = chunk.tool_name
                    tool_call_id = chunk.tool_call_id
                args_text += chunk.arguments_delta
            elif isinstance(chunk, ToolCallComplete):
                if tool_name and chunk.tool_call_id != tool_call_id:
                    continue
                tool_name = tool_name or chunk.tool_name
                tool_call_id = tool_call_id or chunk.tool_call_id
                if chunk.arguments is not None:
                    tool_args = chunk.arguments
                elif chunk.arguments_text and not args_text:
                    args_text = chunk.arguments_text
            elif isinstance(chunk, TurnFinished):
                if chunk.usage is not None:
                    self.usage = TokenUsage(
                        prompt_tokens=self.usage.prompt_tokens + chunk.usage.prompt_tokens,
                        completion_tokens=self.usage.completion_tokens + chunk.usage.completion_tokens,
                    )
                LOGGER.debug("Turn finished (%s), usage=%s", chunk.finish_reason, chunk.usage)
                if not tool_name:
                    await self._release()
            else:
                raise TypeError(f"Unsupported provider chunk: {type(chunk).__name__}")

        if not tool_name:
            await self._release()
            return None
        if tool_args is None:
            try:
                tool_args = json.loads(args_text)
            except json.JSONDecodeError as exc:
                raise ToolArgumentsError(tool_name, args_text) from exc
        return ToolCall(id=tool_call_id, name=tool_name, arguments=tool_args)

    async def _release(self) -> None:
        """Deliver held text, appending each piece to the content before it is sent."""

        while self._held:
            text = self._held.pop(0)
            self.assistant.content += text
            await self._emit(DeltaEvent(text=text))

    # ------------------------------------------------------------------
    # Tool handling
    # ------------------------------------------------------------------

    async def _request_confirmation(self, call: ToolCall) -> None:
        self._transition(ExchangeState.TOOL_PENDING_CONFIRMATION)
        request = ConfirmRequest(tool_name=call.name, tool_args=call.arguments, tool_call_id=call.id)
        self.assistant.confirm_request = request
        await self._emit(ConfirmRequestEvent(request=request))

    async def execute(self, function: ToolFunction, call: ToolCall) -> str:
        limit = self._orchestrator.config.max_tool_iterations
        if limit > 0 and self.executed_tools >= limit:
            raise ToolLoopLimitExceeded(limit)
        self._transition(ExchangeState.TOOL_PENDING_EXECUTION)
        self.executed_tools += 1
        LOGGER.info("Invoking tool %s with args %s", call.name, json.dumps(call.arguments, default=str))
        args = call.arguments if isinstance(call.arguments, Mapping) else {}
        try:
            result = await function.call(self._request.history, self._orchestrator.config.assistant_id, args)
        except Exception as exc:
            raise ToolExecutionError(call.name, exc) from exc
        LOGGER.debug("Tool %s returned %s character(s)", call.name, len(result))
        telemetry_service.emit(
            telemetry_service.TOOL_INVOKED,
            {"message_id": self.assistant.id, "tool": call.name, "tool_call_id": call.id},
        )
        return result

    # ------------------------------------------------------------------
    # Completion helpers
    # ------------------------------------------------------------------

    async def _summarize(self) -> None:
        if self._on_summarize is None:
            return
        try:
            self.summary = await self._on_summarize(self.assistant)
        except Exception:
            LOGGER.warning("Failed generating summary for %s", self.assistant.id, exc_info=True)
            return
        try:
            await self._emit(SummaryEvent(summary=self.summary))
        except TransportClosed:
            LOGGER.info("Failed sending summary for %s; client disconnected", self.assistant.id)

    async def _emit(self, event: StreamEvent) -> None:
        await self._channel.send(event)

    def _transition(self, state: ExchangeState) -> None:
        if state is self.state:
            return
        LOGGER.debug("Exchange %s: %s -> %s", self.assistant.id, self.state.name, state.name)
        self.state = state
        telemetry_service.emit(
            telemetry_service.EXCHANGE_STATE,
            {"message_id": self.assistant.id, "state": state.name},
        )


class StreamOrchestrator:
    """Drives exchanges for one assistant configuration.

    The orchestrator holds no per-exchange state, so one instance may serve
    many concurrent exchanges.

    Args:
        provider: Streaming completion backend.
        config: Assistant-level settings.
        tools: Functions the model may call.
        sink: Receives the assistant message once per exchange.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        config: OrchestratorConfig,
        *,
        tools: Sequence[ToolFunction] = (),
        sink: SideEffectSink | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._tools = list(tools)
        self._sink = sink

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def tools(self) -> list[ToolFunction]:
        return list(self._tools)

    def find_tool(self, name: str) -> ToolFunction | None:
        for function in self._tools:
            if function.name == name:
                return function
        return None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        request: ExchangeRequest,
        channel: EventChannel,
        *,
        on_summarize: SummarizeHook | None = None,
    ) -> ExchangeOutcome:
        """Run a fresh exchange for the user message ``request.parent_id``."""

        exchange = _ExchangeRun(self, request, channel, on_summarize)

        async def opening() -> AsyncIterator[ProviderChunk]:
            return self._stream(request.llm_messages, request)

        return await exchange.run(opening)

    async def resume(
        self,
        request: ExchangeRequest,
        confirm_request: ConfirmRequest,
        confirm_response: ConfirmResponse,
        channel: EventChannel,
        *,
        on_summarize: SummarizeHook | None = None,
    ) -> ExchangeOutcome:
        """Continue an exchange paused on *confirm_request*.

        A denied call is answered with a fixed denial text and never invoked;
        an allowed call runs exactly once. A tool that is no longer available
        is reported to the model instead of failing the exchange.
        """

        exchange = _ExchangeRun(self, request, channel, on_summarize)
        call = ToolCall(
            id=confirm_request.tool_call_id,
            name=confirm_request.tool_name,
            arguments=confirm_request.tool_args,
        )

        async def opening() -> AsyncIterator[ProviderChunk]:
            function = self.find_tool(call.name)
            if function is None:
                result = f"No such function: {call.name}"
            elif not confirm_response.allow:
                LOGGER.info("User denied tool %s", call.name)
                result = DENIED_TOOL_RESULT
            else:
                exchange.tool_calls.append(call)
                result = await exchange.execute(function, call)
            return self.send_tool_result(request, call, result)

        return await exchange.run(opening)

    def start(
        self,
        request: ExchangeRequest,
        *,
        on_summarize: SummarizeHook | None = None,
    ) -> ExchangeStream[ExchangeOutcome]:
        """Return a transport handle that runs :meth:`run` when consumed."""

        return ExchangeStream(lambda channel: self.run(request, channel, on_summarize=on_summarize))

    def start_resume(
        self,
        request: ExchangeRequest,
        confirm_request: ConfirmRequest,
        confirm_response: ConfirmResponse,
        *,
        on_summarize: SummarizeHook | None = None,
    ) -> ExchangeStream[ExchangeOutcome]:
        """Return a transport handle that runs :meth:`resume` when consumed."""

        return ExchangeStream(
            lambda channel: self.resume(
                request, confirm_request, confirm_response, channel, on_summarize=on_summarize
            )
        )

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def send_tool_result(self, request: ExchangeRequest, call: ToolCall, result: str) -> AsyncIterator[ProviderChunk]:
        """Re-enter the provider with the original turns plus the tool round trip."""

        messages = [
            *request.llm_messages,
            LLMMessage(role="assistant", tool_call=call),
            LLMMessage(role="tool", content=result, tool_call_id=call.id, tool_name=call.name),
        ]
        return self._stream(messages, request)

    def _stream(self, messages: Sequence[LLMMessage], request: ExchangeRequest) -> AsyncIterator[ProviderChunk]:
        return self._provider.stream_completion(
            self._config.system_prompt,
            messages,
            tools=self._tools or None,
            temperature=self._config.temperature,
            user=request.user_id if self._config.forward_user_id else None,
        )

    async def complete(self, outcome: ExchangeOutcome) -> None:
        """Run the side-effect sink; each hook is attempted even if the other fails."""

        telemetry_service.emit(
            telemetry_service.EXCHANGE_COMPLETED,
            {
                "message_id": outcome.message.id,
                "state": outcome.state.name,
                "tool_calls": len(outcome.tool_calls),
                "completion_tokens": outcome.usage.completion_tokens,
            },
        )
        sink = self._sink
        if sink is None:
            return
        try:
            await sink.save(outcome.message)
        except Exception:
            LOGGER.exception("Failed to save assistant message %s", outcome.message.id)
        try:
            await sink.record(outcome)
        except Exception:
            LOGGER.exception("Failed to record audit entry for %s", outcome.message.id)


__all__ = [
    "DENIED_TOOL_RESULT",
    "ExchangeOutcome",
    "ExchangeRequest",
    "ExchangeState",
    "OrchestratorConfig",
    "SideEffectSink",
    "StreamOrchestrator",
    "SummarizeHook",
]
