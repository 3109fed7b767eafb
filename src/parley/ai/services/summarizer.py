"""Conversation title generation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ...chat.message_model import Message
from ..ai_types import CompletionProvider, LLMMessage, TextDelta

if TYPE_CHECKING:
    from ...services.persistence import Conversation

LOGGER = logging.getLogger(__name__)

DEFAULT_SUMMARY_MAX_LENGTH = 500
SUMMARY_INSTRUCTION = "Summary of this conversation in three words, same language, usable as a title"


class Summarizer:
    """Derive a short title from the first user/assistant exchange.

    Both sides of the exchange are truncated to ``max_length`` characters
    before being sent, followed by a fixed title instruction. The model is
    called without tools and its text deltas are concatenated.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        max_length: int = DEFAULT_SUMMARY_MAX_LENGTH,
        temperature: float | None = None,
    ) -> None:
        self._provider = provider
        self._max_length = max(0, int(max_length))
        self._temperature = temperature

    @property
    def max_length(self) -> int:
        return self._max_length

    def build_messages(self, user_message: Message, assistant_message: Message) -> list[LLMMessage]:
        user_excerpt = user_message.content[: self._max_length]
        return [
            LLMMessage(
                role="user",
                content=f"{user_excerpt}\nUploaded {len(user_message.attachments)} files",
            ),
            LLMMessage(role="assistant", content=assistant_message.content[: self._max_length]),
            LLMMessage(role="user", content=SUMMARY_INSTRUCTION),
        ]

    async def summarize(
        self,
        conversation: "Conversation | None",
        user_message: Message,
        assistant_message: Message,
    ) -> str:
        messages = self.build_messages(user_message, assistant_message)
        summary = ""
        async for chunk in self._provider.stream_completion(
            "",
            messages,
            tools=None,
            temperature=self._temperature,
        ):
            if isinstance(chunk, TextDelta):
                summary += chunk.text
        LOGGER.debug(
            "Summarized conversation %s as %r",
            conversation.id if conversation is not None else user_message.conversation_id,
            summary,
        )
        return summary


__all__ = ["DEFAULT_SUMMARY_MAX_LENGTH", "SUMMARY_INSTRUCTION", "Summarizer"]
