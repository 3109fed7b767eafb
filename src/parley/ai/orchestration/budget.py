"""Token budgeting for the history window sent to a provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ...chat.message_model import Message
from ..ai_types import TokenCounterProtocol


@dataclass(slots=True)
class BudgetResult:
    """Outcome of :func:`limit_messages`.

    Attributes:
        token_count: System prompt tokens plus the tokens of every selected message.
        messages: Selected messages, newest first.
    """

    token_count: int
    messages: list[Message] = field(default_factory=list)

    def __iter__(self):
        yield self.token_count
        yield self.messages


def limit_messages(
    tokenizer: TokenCounterProtocol,
    system_prompt: str,
    newest_to_oldest: Iterable[Message],
    token_limit: int,
) -> BudgetResult:
    """Select the newest messages that fit in *token_limit*.

    Each message is appended before the limit is checked, so the newest message
    is always selected and the message that crosses the limit is kept as the
    last one.
    """

    token_count = tokenizer.count(system_prompt or "")
    selected: list[Message] = []
    for message in newest_to_oldest:
        token_count += tokenizer.count(message.content or "")
        selected.append(message)
        if token_count > token_limit:
            break
    return BudgetResult(token_count=token_count, messages=selected)


__all__ = ["BudgetResult", "limit_messages"]
