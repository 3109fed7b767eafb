"""Chat message data models shared by the exchange engine and its collaborators."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional, cast

ChatRole = Literal["system", "user", "assistant", "tool"]
_ROLES: tuple[str, ...] = ("system", "user", "assistant", "tool")


def _utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat()


def new_message_id() -> str:
    """Return a fresh opaque message identifier."""

    return uuid.uuid4().hex


@dataclass(slots=True)
class Attachment:
    """Reference to a file uploaded alongside a message."""

    id: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "mimetype": self.mime_type, "size": self.size}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Attachment":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            mime_type=str(payload.get("mimetype") or payload.get("mime_type") or "application/octet-stream"),
            size=int(payload.get("size") or 0),
        )


@dataclass(slots=True)
class ConfirmRequest:
    """Tool invocation awaiting a human allow/deny decision."""

    tool_name: str
    tool_args: Any
    tool_call_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"toolName": self.tool_name, "toolArgs": self.tool_args, "toolCallId": self.tool_call_id}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConfirmRequest":
        return cls(
            tool_name=str(payload["toolName"]),
            tool_args=payload.get("toolArgs"),
            tool_call_id=str(payload.get("toolCallId", "")),
        )


@dataclass(slots=True)
class ConfirmResponse:
    """Answer to a :class:`ConfirmRequest`."""

    allow: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"allow": self.allow}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConfirmResponse":
        return cls(allow=bool(payload.get("allow", False)))


@dataclass(slots=True)
class Message:
    """A single node of a conversation tree.

    Messages reference their parent by id only. ``content`` is the only field
    mutated after creation, and only while an assistant reply is streaming.
    """

    role: ChatRole
    content: str
    conversation_id: str
    parent: Optional[str] = None
    id: str = field(default_factory=new_message_id)
    attachments: list[Attachment] = field(default_factory=list)
    sent_at: str = field(default_factory=_utcnow_iso)
    confirm_request: Optional[ConfirmRequest] = None
    confirm_response: Optional[ConfirmResponse] = None

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the wire field names of the streaming protocol."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "conversationId": self.conversation_id,
            "parent": self.parent,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "sentAt": self.sent_at,
        }
        if self.confirm_request is not None:
            payload["confirmRequest"] = self.confirm_request.to_dict()
        if self.confirm_response is not None:
            payload["confirmResponse"] = self.confirm_response.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        confirm_request = payload.get("confirmRequest")
        confirm_response = payload.get("confirmResponse")
        return cls(
            id=str(payload.get("id") or new_message_id()),
            role=cast(ChatRole, payload["role"]),
            content=str(payload.get("content") or ""),
            conversation_id=str(payload["conversationId"]),
            parent=payload.get("parent"),
            attachments=[Attachment.from_dict(item) for item in payload.get("attachments") or ()],
            sent_at=str(payload.get("sentAt") or _utcnow_iso()),
            confirm_request=ConfirmRequest.from_dict(confirm_request) if confirm_request else None,
            confirm_response=ConfirmResponse.from_dict(confirm_response) if confirm_response else None,
        )


__all__ = [
    "Attachment",
    "ChatRole",
    "ConfirmRequest",
    "ConfirmResponse",
    "Message",
    "new_message_id",
]
