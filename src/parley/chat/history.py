"""Conversation tree helpers."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from ..errors import HistoryCycleError
from .message_model import Message

LOGGER = logging.getLogger(__name__)


def index_messages(messages: Iterable[Message]) -> dict[str, Message]:
    """Return an id -> message mapping; later duplicates win."""

    return {message.id: message for message in messages}


def path_to_root(messages: Iterable[Message], leaf: Message) -> list[Message]:
    """Walk parent links from *leaf* up to its root.

    The result is ordered newest first: ``[leaf, parent(leaf), ...]``. The walk
    stops at the first parent id that is absent from *messages*, which is the
    expected outcome for a detached or truncated history window. A parent chain
    that revisits a message raises :class:`HistoryCycleError`.
    """

    by_id = index_messages(messages)
    path: list[Message] = []
    seen: set[str] = set()
    current: Message | None = leaf
    while current is not None:
        if current.id in seen:
            LOGGER.warning("Cycle detected in conversation %s at %s", leaf.conversation_id, current.id)
            raise HistoryCycleError(current.id)
        seen.add(current.id)
        path.append(current)
        current = by_id.get(current.parent) if current.parent else None
    return path


def validate_history(messages: Iterable[Message]) -> None:
    """Check that parent links stay inside one conversation and never loop.

    Raises :class:`HistoryCycleError` for a cyclic chain and ``ValueError`` for a
    parent that belongs to another conversation.
    """

    by_id = index_messages(messages)
    _check_conversation_boundaries(by_id)
    settled: set[str] = set()
    for message in by_id.values():
        trail: list[str] = []
        on_trail: set[str] = set()
        current: Message | None = message
        while current is not None and current.id not in settled:
            if current.id in on_trail:
                raise HistoryCycleError(current.id)
            trail.append(current.id)
            on_trail.add(current.id)
            current = by_id.get(current.parent) if current.parent else None
        settled.update(trail)


def _check_conversation_boundaries(by_id: Mapping[str, Message]) -> None:
    for message in by_id.values():
        if not message.parent:
            continue
        parent = by_id.get(message.parent)
        if parent is not None and parent.conversation_id != message.conversation_id:
            raise ValueError(
                f"Message {message.id} references parent {parent.id} from another conversation"
            )


__all__ = ["index_messages", "path_to_root", "validate_history"]
