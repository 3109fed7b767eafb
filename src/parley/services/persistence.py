"""Storage collaborators consumed by the chat service.

Production deployments provide their own implementations of the protocols
below; the in-memory versions back tests and the command-line runner.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, Literal, Protocol

from ..ai.providers import ProviderParams
from ..chat.history import validate_history
from ..chat.message_model import Message

LOGGER = logging.getLogger(__name__)

AuditType = Literal["user", "assistant"]


@dataclass(slots=True)
class Conversation:
    """Conversation joined with the assistant and backend serving it."""

    id: str
    owner_id: str
    assistant_id: str
    model: str
    system_prompt: str = ""
    token_limit: int = 4_000
    temperature: float | None = None
    name: str = ""
    provider: ProviderParams = field(default_factory=ProviderParams)


@dataclass(slots=True)
class AuditRecord:
    """One audit-trail entry per user or assistant message."""

    message_id: str
    conversation_id: str
    user_id: str
    assistant_id: str
    type: AuditType
    model: str
    tokens: int
    sent_at: str
    errors: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    async def rename_conversation(self, conversation_id: str, name: str) -> None:
        ...


class MessageStore(Protocol):
    async def get_messages(self, conversation_id: str) -> list[Message]:
        ...

    async def save_message(self, message: Message) -> None:
        ...


class AuditLog(Protocol):
    async def append(self, record: AuditRecord) -> None:
        ...


class InMemoryConversationStore:
    """Dictionary-backed :class:`ConversationStore`."""

    def __init__(self, conversations: Iterable[Conversation] = ()) -> None:
        self._conversations: dict[str, Conversation] = {item.id: item for item in conversations}
        self._lock = Lock()

    def add(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    async def rename_conversation(self, conversation_id: str, name: str) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise KeyError(conversation_id)
            self._conversations[conversation_id] = replace(conversation, name=name)


class InMemoryMessageStore:
    """Dictionary-backed :class:`MessageStore`.

    Saving is an upsert keyed by message id, so concurrent writers of the same
    message resolve last-write-wins. Every save re-validates the conversation
    tree and rejects writes that would close a parent cycle.
    """

    def __init__(self) -> None:
        self._messages: dict[str, dict[str, Message]] = defaultdict(dict)
        self._lock = Lock()

    async def get_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            return list(self._messages.get(conversation_id, {}).values())

    async def save_message(self, message: Message) -> None:
        stored = replace(message, attachments=list(message.attachments))
        with self._lock:
            conversation = dict(self._messages[message.conversation_id])
            conversation[stored.id] = stored
            validate_history(conversation.values())
            self._messages[message.conversation_id] = conversation
        LOGGER.debug("Saved %s message %s in %s", message.role, message.id, message.conversation_id)


class InMemoryAuditLog:
    """Append-only :class:`AuditLog` with a monthly token rollup."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = Lock()

    async def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def tokens_by_month(self, months: int = 12, *, today: date | None = None) -> list[tuple[str, int]]:
        """Return ``(YYYY-MM-01, tokens)`` for the last *months* months, oldest first."""

        anchor = today or datetime.now(timezone.utc).date()
        starts: list[date] = []
        year, month = anchor.year, anchor.month
        for _ in range(max(0, months)):
            starts.append(date(year, month, 1))
            year, month = (year, month - 1) if month > 1 else (year - 1, 12)
        totals = {start: 0 for start in starts}
        for record in self.records:
            sent = _parse_date(record.sent_at)
            if sent is None:
                continue
            key = date(sent.year, sent.month, 1)
            if key in totals:
                totals[key] += record.tokens
        return [(start.isoformat(), totals[start]) for start in sorted(starts)]


def _parse_date(value: str) -> date | None:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        LOGGER.debug("Ignoring audit record with unparsable sent_at %r", value)
        return None


__all__ = [
    "AuditLog",
    "AuditRecord",
    "AuditType",
    "Conversation",
    "ConversationStore",
    "InMemoryAuditLog",
    "InMemoryConversationStore",
    "InMemoryMessageStore",
    "MessageStore",
]
