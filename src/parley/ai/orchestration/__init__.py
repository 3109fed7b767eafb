"""Exchange orchestration: budgeting, stream events, and the tool loop."""

from .budget import BudgetResult, limit_messages
from .channel import EventChannel, ExchangeStream
from .events import (
    ConfirmRequestEvent,
    DeltaEvent,
    ResponseEvent,
    StreamEvent,
    SummaryEvent,
    encode_event,
    sse_frame,
)
from .orchestrator import (
    DENIED_TOOL_RESULT,
    ExchangeOutcome,
    ExchangeRequest,
    ExchangeState,
    OrchestratorConfig,
    SideEffectSink,
    StreamOrchestrator,
)

__all__ = [
    "BudgetResult",
    "ConfirmRequestEvent",
    "DENIED_TOOL_RESULT",
    "DeltaEvent",
    "EventChannel",
    "ExchangeOutcome",
    "ExchangeRequest",
    "ExchangeState",
    "ExchangeStream",
    "OrchestratorConfig",
    "ResponseEvent",
    "SideEffectSink",
    "StreamEvent",
    "StreamOrchestrator",
    "SummaryEvent",
    "encode_event",
    "limit_messages",
    "sse_frame",
]
