"""Tests for the streaming exchange orchestrator."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Sequence

import pytest

from parley.ai.ai_types import (
    LLMMessage,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
    TurnFinished,
)
from parley.ai.orchestration.channel import EventChannel
from parley.ai.orchestration.events import ConfirmRequestEvent, DeltaEvent, ResponseEvent, SummaryEvent
from parley.ai.orchestration.orchestrator import (
    DENIED_TOOL_RESULT,
    ExchangeRequest,
    ExchangeState,
    OrchestratorConfig,
    StreamOrchestrator,
)
from parley.chat.message_model import ConfirmRequest, ConfirmResponse, Message
from parley.errors import (
    ToolArgumentsError,
    ToolExecutionError,
    ToolLoopLimitExceeded,
    TransportClosed,
    UnknownToolError,
)
from parley.services import telemetry as telemetry_service
from tests.helpers import (
    RecordingSink,
    RecordingTool,
    ScriptedProvider,
    collect,
    make_tool,
    text_turn,
    tool_turn,
)

_OPENING = [LLMMessage(role="user", content="hi")]


def _request(*, history: Sequence[Message] = (), user_id: str = "user-1") -> ExchangeRequest:
    return ExchangeRequest(
        conversation_id="c1",
        parent_id="user-msg",
        llm_messages=list(_OPENING),
        history=list(history),
        user_id=user_id,
    )


def _orchestrator(provider: Any, *, tools: Sequence[Any] = (), sink: Any = None, **config: Any) -> StreamOrchestrator:
    return StreamOrchestrator(
        provider,
        OrchestratorConfig(assistant_id="asst-1", system_prompt="sys", **config),
        tools=tools,
        sink=sink,
    )


def _deltas(events: Sequence[Any]) -> list[str]:
    return [event.text for event in events if isinstance(event, DeltaEvent)]


# ---------------------------------------------------------------------------
# Plain streaming
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plain_exchange_streams_and_persists_concatenated_content(telemetry_sink) -> None:
    provider = ScriptedProvider([text_turn("Hel", "lo", " there", usage=TokenUsage(7, 3))])
    sink = RecordingSink()
    stream = _orchestrator(provider, sink=sink).start(_request())

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert isinstance(events[0], ResponseEvent)
    assert sum(isinstance(event, ResponseEvent) for event in events) == 1
    shell = events[0].message
    assert shell.role == "assistant" and shell.content == "" and shell.parent == "user-msg"
    assert _deltas(events) == ["Hel", "lo", " there"]
    assert outcome.state is ExchangeState.DONE
    assert outcome.usage.completion_tokens == 3
    assert [message.content for message in sink.saved] == ["Hello there"]
    assert sink.saved[0].id == shell.id
    assert sink.outcomes == [outcome]
    call = provider.calls[0]
    assert call.system_prompt == "sys"
    assert call.messages == _OPENING
    assert call.tools is None
    assert call.user is None
    completed = [record for record in telemetry_sink.tail() if record.name == telemetry_service.EXCHANGE_COMPLETED]
    assert completed[-1].payload["state"] == "DONE"


@pytest.mark.asyncio
async def test_frames_are_sse_encoded() -> None:
    provider = ScriptedProvider([text_turn("ok")])
    stream = _orchestrator(provider).start(_request())

    frames = [frame async for frame in stream.frames()]

    assert frames[0].startswith('data: {"type": "response"')
    assert frames[1] == 'data: {"type": "delta", "content": "ok"}\n\n'


@pytest.mark.asyncio
async def test_user_id_forwarded_only_when_configured() -> None:
    provider = ScriptedProvider([text_turn("a"), text_turn("b")])

    await _orchestrator(provider).start(_request()).wait()
    await _orchestrator(provider, forward_user_id=True).start(_request()).wait()

    assert [call.user for call in provider.calls] == [None, "user-1"]


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tool_call_runs_once_and_reenters_with_result(telemetry_sink) -> None:
    recorder = RecordingTool(result="42")
    tool = make_tool("lookup", recorder)
    provider = ScriptedProvider([tool_turn("lookup", {"q": "answer"}), text_turn("The answer is ", "42")])
    history = [Message(role="user", content="hi", conversation_id="c1", id="user-msg")]
    sink = RecordingSink()
    stream = _orchestrator(provider, tools=[tool], sink=sink).start(_request(history=history))

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert not any(isinstance(event, ConfirmRequestEvent) for event in events)
    assert _deltas(events) == ["The answer is ", "42"]
    assert recorder.calls == [(history, "asst-1", {"q": "answer"})]
    assert len(provider.calls) == 2
    assert provider.calls[0].tools == [tool]
    call = ToolCall(id="call-1", name="lookup", arguments={"q": "answer"})
    assert provider.calls[1].messages == [
        *_OPENING,
        LLMMessage(role="assistant", tool_call=call),
        LLMMessage(role="tool", content="42", tool_call_id="call-1", tool_name="lookup"),
    ]
    assert outcome.tool_calls == [call]
    assert sink.saved[0].content == "The answer is 42"
    states = [record.payload["state"] for record in telemetry_sink.tail() if record.name == telemetry_service.EXCHANGE_STATE]
    assert states == ["TOOL_PENDING_EXECUTION", "STREAMING", "DONE"]
    assert any(record.name == telemetry_service.TOOL_INVOKED for record in telemetry_sink.tail())


@pytest.mark.asyncio
async def test_tool_reentry_carries_only_latest_round_trip() -> None:
    first, second = RecordingTool(result="one"), RecordingTool(result="two")
    provider = ScriptedProvider(
        [
            tool_turn("first", {"n": 1}, call_id="call-1"),
            tool_turn("second", {"n": 2}, call_id="call-2"),
            text_turn("done"),
        ]
    )
    orchestrator = _orchestrator(provider, tools=[make_tool("first", first), make_tool("second", second)])

    outcome = await orchestrator.start(_request()).wait()

    assert outcome.state is ExchangeState.DONE
    assert len(first.calls) == 1 and len(second.calls) == 1
    final_messages = provider.calls[2].messages
    assert len(final_messages) == len(_OPENING) + 2
    assert final_messages[-1].tool_call_id == "call-2"
    assert final_messages[-1].content == "two"


@pytest.mark.asyncio
async def test_structured_tool_arguments_skip_json_parsing() -> None:
    recorder = RecordingTool()
    provider = ScriptedProvider(
        [
            [
                ToolCallStart(tool_call_id="t1", tool_name="lookup"),
                ToolCallComplete(tool_call_id="t1", tool_name="lookup", arguments={"q": "structured"}),
                TurnFinished(finish_reason="tool_use"),
            ],
            text_turn("ok"),
        ]
    )

    await _orchestrator(provider, tools=[make_tool("lookup", recorder)]).start(_request()).wait()

    assert recorder.calls[0][2] == {"q": "structured"}


@pytest.mark.asyncio
async def test_additional_tool_calls_in_one_turn_are_ignored() -> None:
    recorder = RecordingTool()
    turn = [
        ToolCallStart(tool_call_id="a", tool_name="lookup"),
        ToolCallDelta(tool_call_id="a", tool_name="lookup", arguments_delta='{"q": 1}'),
        ToolCallStart(tool_call_id="b", tool_name="lookup"),
        ToolCallDelta(tool_call_id="b", tool_name="lookup", arguments_delta='{"q": 2}'),
        ToolCallComplete(tool_call_id="a", tool_name="lookup", arguments_text='{"q": 1}'),
        ToolCallComplete(tool_call_id="b", tool_name="lookup", arguments_text='{"q": 2}'),
        TurnFinished(finish_reason="tool_calls"),
    ]
    provider = ScriptedProvider([turn, text_turn("ok")])

    outcome = await _orchestrator(provider, tools=[make_tool("lookup", recorder)]).start(_request()).wait()

    assert [args for _, _, args in recorder.calls] == [{"q": 1}]
    assert [call.id for call in outcome.tool_calls] == ["a"]


@pytest.mark.asyncio
async def test_tool_loop_cap_fails_exchange() -> None:
    recorder = RecordingTool()
    provider = ScriptedProvider(
        [tool_turn("lookup", call_id="call-1"), tool_turn("lookup", call_id="call-2"), text_turn("never")]
    )
    stream = _orchestrator(provider, tools=[make_tool("lookup", recorder)], max_tool_iterations=1).start(_request())

    _, error = await collect(stream)
    outcome = await stream.wait()

    assert error is not None and isinstance(error.cause, ToolLoopLimitExceeded)
    assert len(recorder.calls) == 1
    assert len(provider.calls) == 2
    assert outcome.state is ExchangeState.FAILED


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_confirm_gated_tool_pauses_without_invoking() -> None:
    recorder = RecordingTool()
    summaries: list[Message] = []

    async def on_summarize(message: Message) -> str:
        summaries.append(message)
        return "title"

    provider = ScriptedProvider([tool_turn("danger", {"path": "/tmp"})])
    sink = RecordingSink()
    orchestrator = _orchestrator(provider, tools=[make_tool("danger", recorder, require_confirm=True)], sink=sink)
    stream = orchestrator.start(_request(), on_summarize=on_summarize)

    events, error = await collect(stream)
    outcome = await stream.wait()

    expected = ConfirmRequest(tool_name="danger", tool_args={"path": "/tmp"}, tool_call_id="call-1")
    assert error is None
    assert [event for event in events if isinstance(event, ConfirmRequestEvent)] == [
        ConfirmRequestEvent(request=expected)
    ]
    assert isinstance(events[-1], ConfirmRequestEvent)
    assert recorder.calls == []
    assert len(provider.calls) == 1
    assert summaries == []
    assert outcome.pending_confirmation == expected
    assert sink.saved[0].confirm_request == expected


@pytest.mark.asyncio
async def test_resume_with_allow_invokes_tool_once() -> None:
    recorder = RecordingTool(result="deleted")
    provider = ScriptedProvider([text_turn("All ", "done")])
    orchestrator = _orchestrator(provider, tools=[make_tool("danger", recorder, require_confirm=True)])
    request = ConfirmRequest(tool_name="danger", tool_args={"path": "/tmp"}, tool_call_id="call-1")
    stream = orchestrator.start_resume(_request(), request, ConfirmResponse(allow=True))

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert isinstance(events[0], ResponseEvent)
    assert _deltas(events) == ["All ", "done"]
    assert len(recorder.calls) == 1
    assert recorder.calls[0][2] == {"path": "/tmp"}
    tool_message = provider.calls[0].messages[-1]
    assert tool_message.role == "tool" and tool_message.content == "deleted"
    assert outcome.message.content == "All done"


@pytest.mark.asyncio
async def test_resume_with_deny_never_invokes_tool() -> None:
    recorder = RecordingTool()
    provider = ScriptedProvider([text_turn("Understood")])
    orchestrator = _orchestrator(provider, tools=[make_tool("danger", recorder, require_confirm=True)])
    request = ConfirmRequest(tool_name="danger", tool_args={}, tool_call_id="call-1")

    outcome = await orchestrator.start_resume(_request(), request, ConfirmResponse(allow=False)).wait()

    assert recorder.calls == []
    assert provider.calls[0].messages[-1].content == DENIED_TOOL_RESULT
    assert outcome.state is ExchangeState.DONE


@pytest.mark.asyncio
async def test_resume_for_removed_tool_reports_missing_function() -> None:
    provider = ScriptedProvider([text_turn("Sorry")])
    request = ConfirmRequest(tool_name="danger", tool_args={}, tool_call_id="call-1")

    outcome = await _orchestrator(provider).start_resume(_request(), request, ConfirmResponse(allow=True)).wait()

    assert provider.calls[0].messages[-1].content == "No such function: danger"
    assert outcome.state is ExchangeState.DONE


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_tool_fails_and_persists_partial_content() -> None:
    provider = ScriptedProvider([tool_turn("ghost", text=["Let me check"])])
    sink = RecordingSink()
    stream = _orchestrator(provider, sink=sink).start(_request())

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is not None and isinstance(error.cause, UnknownToolError)
    assert str(error.cause) == "No such function: ghost"
    assert _deltas(events) == []
    assert outcome.state is ExchangeState.FAILED
    assert [message.content for message in sink.saved] == ["Let me check"]


@pytest.mark.asyncio
async def test_malformed_tool_arguments_fail_exchange() -> None:
    provider = ScriptedProvider(
        [
            [
                ToolCallStart(tool_call_id="t1", tool_name="lookup"),
                ToolCallDelta(tool_call_id="t1", tool_name="lookup", arguments_delta="{not json"),
                TurnFinished(finish_reason="tool_calls"),
            ]
        ]
    )
    recorder = RecordingTool()
    stream = _orchestrator(provider, tools=[make_tool("lookup", recorder)]).start(_request())

    _, error = await collect(stream)

    assert error is not None and isinstance(error.cause, ToolArgumentsError)
    assert error.cause.raw == "{not json"
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_tool_exception_is_fatal() -> None:
    recorder = RecordingTool(error=ValueError("nope"))
    provider = ScriptedProvider([tool_turn("lookup")])
    sink = RecordingSink()
    stream = _orchestrator(provider, tools=[make_tool("lookup", recorder)], sink=sink).start(_request())

    _, error = await collect(stream)
    outcome = await stream.wait()

    assert error is not None and isinstance(error.cause, ToolExecutionError)
    assert isinstance(error.cause.cause, ValueError)
    assert outcome.state is ExchangeState.FAILED
    assert len(sink.saved) == 1


@pytest.mark.asyncio
async def test_provider_failure_mid_stream_keeps_partial_content() -> None:
    failure = RuntimeError("provider down")
    provider = ScriptedProvider([[TextDelta(text="partial"), failure]])
    sink = RecordingSink()
    stream = _orchestrator(provider, sink=sink).start(_request())

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert _deltas(events) == []
    assert error is not None and error.cause is failure
    assert outcome.error is failure
    assert sink.saved[0].content == "partial"
    assert sink.outcomes[0].state is ExchangeState.FAILED


@pytest.mark.asyncio
async def test_provider_failure_before_first_chunk() -> None:
    provider = ScriptedProvider([RuntimeError("refused")])
    sink = RecordingSink()
    stream = _orchestrator(provider, sink=sink).start(_request())

    events, error = await collect(stream)

    assert len(events) == 1 and isinstance(events[0], ResponseEvent)
    assert error is not None
    assert sink.saved[0].content == ""


class _DisconnectingChannel(EventChannel):
    """Channel whose consumer goes away after the first delta it receives."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[Any] = []

    async def send(self, event: Any) -> None:
        await super().send(event)
        self.sent.append(event)
        if isinstance(event, DeltaEvent):
            self.close()


@pytest.mark.asyncio
async def test_client_disconnect_still_persists() -> None:
    provider = ScriptedProvider([text_turn("a", "b", "c")])
    sink = RecordingSink()
    channel = _DisconnectingChannel()

    outcome = await _orchestrator(provider, sink=sink).run(_request(), channel)

    assert _deltas(channel.sent) == ["a"]
    assert isinstance(outcome.error, TransportClosed)
    assert outcome.state is ExchangeState.FAILED
    # "b" was accumulated before its delivery failed; "c" was never forwarded.
    assert [message.content for message in sink.saved] == ["ab"]
    assert len(sink.outcomes) == 1


@pytest.mark.asyncio
async def test_tool_turn_text_is_neither_streamed_nor_persisted() -> None:
    recorder = RecordingTool(result="42")
    provider = ScriptedProvider([tool_turn("lookup", {}, text=["Let me check. "]), text_turn("42")])
    sink = RecordingSink()
    stream = _orchestrator(provider, tools=[make_tool("lookup", recorder)], sink=sink).start(_request())

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert _deltas(events) == ["42"]
    assert outcome.message.content == "42"
    assert [message.content for message in sink.saved] == ["42"]
    assert provider.calls[1].messages[-2].content == ""


@pytest.mark.asyncio
async def test_paused_exchange_drops_tool_turn_text() -> None:
    provider = ScriptedProvider([tool_turn("danger", {"x": 1}, text=["About to act"])])
    tool = make_tool("danger", RecordingTool(), require_confirm=True)
    sink = RecordingSink()
    stream = _orchestrator(provider, tools=[tool], sink=sink).start(_request())

    events, _ = await collect(stream)

    assert _deltas(events) == []
    assert isinstance(events[-1], ConfirmRequestEvent)
    assert sink.saved[0].content == ""




@pytest.mark.asyncio
async def test_cancellation_persists_then_propagates() -> None:
    release = asyncio.Event()

    class _HangingProvider:
        model_name = "hang"

        async def stream_completion(self, *_args: Any, **_kwargs: Any) -> AsyncIterator[Any]:
            yield TextDelta(text="before")
            yield TurnFinished(finish_reason="stop")
            await release.wait()
            yield TextDelta(text="never")

    sink = RecordingSink()
    stream = _orchestrator(_HangingProvider(), sink=sink).start(_request())

    async with aclosing(stream.events()) as events:
        await events.__anext__()
        await events.__anext__()
        stream.start().cancel()

    with pytest.raises(asyncio.CancelledError):
        await stream.wait()
    assert [message.content for message in sink.saved] == ["before"]
    assert sink.outcomes[0].state is ExchangeState.FAILED


@pytest.mark.asyncio
async def test_sink_failures_are_isolated() -> None:
    provider = ScriptedProvider([text_turn("fine")])
    sink = RecordingSink(fail_save=True)
    stream = _orchestrator(provider, sink=sink).start(_request())

    _, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert outcome.state is ExchangeState.DONE
    assert sink.outcomes == [outcome]


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_summary_event_follows_content() -> None:
    seen: list[str] = []

    async def on_summarize(message: Message) -> str:
        seen.append(message.content)
        return "Greeting Small Talk"

    provider = ScriptedProvider([text_turn("Hello")])
    stream = _orchestrator(provider).start(_request(), on_summarize=on_summarize)

    events, _ = await collect(stream)
    outcome = await stream.wait()

    assert events[-1] == SummaryEvent(summary="Greeting Small Talk")
    assert seen == ["Hello"]
    assert outcome.summary == "Greeting Small Talk"


@pytest.mark.asyncio
async def test_summary_failure_is_not_escalated() -> None:
    async def on_summarize(_message: Message) -> str:
        raise RuntimeError("summary backend down")

    provider = ScriptedProvider([text_turn("Hello")])
    sink = RecordingSink()
    stream = _orchestrator(provider, sink=sink).start(_request(), on_summarize=on_summarize)

    events, error = await collect(stream)
    outcome = await stream.wait()

    assert error is None
    assert not any(isinstance(event, SummaryEvent) for event in events)
    assert outcome.state is ExchangeState.DONE
    assert outcome.summary is None
    assert sink.saved[0].content == "Hello"
