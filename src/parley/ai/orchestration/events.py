"""Outward stream events and their server-sent-events framing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Union

from ...chat.message_model import ConfirmRequest, Message


@dataclass(slots=True, frozen=True)
class ResponseEvent:
    """First event of every exchange; carries the assistant message shell."""

    message: Message


@dataclass(slots=True, frozen=True)
class DeltaEvent:
    """A text fragment to append to the running assistant content."""

    text: str


@dataclass(slots=True, frozen=True)
class ConfirmRequestEvent:
    """Terminal event asking the client for an allow/deny decision."""

    request: ConfirmRequest


@dataclass(slots=True, frozen=True)
class SummaryEvent:
    """Suggested conversation title produced after the main content."""

    summary: str


StreamEvent = Union[ResponseEvent, DeltaEvent, ConfirmRequestEvent, SummaryEvent]


def encode_event(event: StreamEvent) -> Dict[str, Any]:
    """Return the ``{"type", "content"}`` payload for *event*."""

    if isinstance(event, ResponseEvent):
        return {"type": "response", "content": event.message.to_dict()}
    if isinstance(event, DeltaEvent):
        return {"type": "delta", "content": event.text}
    if isinstance(event, ConfirmRequestEvent):
        return {"type": "confirmRequest", "content": event.request.to_dict()}
    if isinstance(event, SummaryEvent):
        return {"type": "summary", "content": event.summary}
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def sse_frame(event: StreamEvent) -> str:
    """Serialize *event* as a single ``data: <json>\\n\\n`` frame."""

    return f"data: {json.dumps(encode_event(event), ensure_ascii=False)}\n\n"


__all__ = [
    "ConfirmRequestEvent",
    "DeltaEvent",
    "ResponseEvent",
    "StreamEvent",
    "SummaryEvent",
    "encode_event",
    "sse_frame",
]
