"""Request-level chat flow: authorize, rebuild context, and start an exchange."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..ai.ai_types import CompletionProvider, LLMMessage, TokenCounterProtocol
from ..ai.client import default_encoding
from ..ai.orchestration.budget import BudgetResult, limit_messages
from ..ai.orchestration.channel import ExchangeStream
from ..ai.orchestration.orchestrator import (
    ExchangeOutcome,
    ExchangeRequest,
    OrchestratorConfig,
    StreamOrchestrator,
    SummarizeHook,
)
from ..ai.providers import ProviderRegistry, ProviderType, default_provider_registry
from ..ai.services.summarizer import DEFAULT_SUMMARY_MAX_LENGTH, Summarizer
from ..ai.tools import ToolRegistry, default_registry
from ..chat.history import index_messages, path_to_root
from ..chat.message_model import Message
from ..errors import ConversationForbidden, ConversationNotFound, InvalidConfirmResponse
from .persistence import AuditLog, AuditRecord, Conversation, ConversationStore, MessageStore

LOGGER = logging.getLogger(__name__)

# Backends that accept the end-user id for their own accounting.
_USER_FORWARDING_PROVIDERS = frozenset({ProviderType.LOGICLECLOUD})


class _AssistantSink:
    """Persists and audits the assistant reply of one exchange."""

    def __init__(self, service: "ChatService", conversation: Conversation, user_id: str) -> None:
        self._service = service
        self._conversation = conversation
        self._user_id = user_id

    async def save(self, message: Message) -> None:
        await self._service.messages.save_message(message)

    async def record(self, outcome: ExchangeOutcome) -> None:
        message = outcome.message
        await self._service.audit.append(
            AuditRecord(
                message_id=message.id,
                conversation_id=self._conversation.id,
                user_id=self._user_id,
                assistant_id=self._conversation.assistant_id,
                type="assistant",
                model=self._conversation.model,
                tokens=self._service.tokenizer.count(message.content),
                sent_at=message.sent_at,
                errors=_describe_error(outcome.error),
            )
        )


class ChatService:
    """Entry point for inbound user messages.

    Args:
        conversations: Conversation lookup (joined with assistant and backend).
        messages: Message fetch and save.
        audit: Audit trail.
        tool_registry: Per-assistant tool enumeration.
        provider_registry: Backend adapters by provider kind.
        tokenizer: Counter used for budgeting and audit token counts.
        auto_summary: Title new conversations after their first exchange.
        summary_max_length: Character cap applied to each side of the summary excerpt.
        max_tool_iterations: Tool executions allowed per exchange; 0 disables the cap.
    """

    def __init__(
        self,
        conversations: ConversationStore,
        messages: MessageStore,
        audit: AuditLog,
        *,
        tool_registry: ToolRegistry | None = None,
        provider_registry: ProviderRegistry | None = None,
        tokenizer: TokenCounterProtocol | None = None,
        auto_summary: bool = False,
        summary_max_length: int = DEFAULT_SUMMARY_MAX_LENGTH,
        max_tool_iterations: int = 0,
    ) -> None:
        self.conversations = conversations
        self.messages = messages
        self.audit = audit
        self.tool_registry = tool_registry or default_registry()
        self.provider_registry = provider_registry or default_provider_registry()
        self.tokenizer: TokenCounterProtocol = tokenizer or default_encoding()
        self.auto_summary = auto_summary
        self.summary_max_length = summary_max_length
        self.max_tool_iterations = max(0, int(max_tool_iterations))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle_payload(self, user_id: str, payload: Mapping[str, Any]) -> ExchangeStream[ExchangeOutcome]:
        """Decode a wire-format message and pass it to :meth:`handle_message`."""

        return await self.handle_message(user_id, Message.from_dict(payload))

    async def handle_message(self, user_id: str, message: Message) -> ExchangeStream[ExchangeOutcome]:
        """Validate *message*, persist it, and return the stream of the assistant reply.

        Raises:
            ConversationNotFound: The conversation does not exist.
            ConversationForbidden: *user_id* does not own the conversation.
            InvalidConfirmResponse: A confirmation answer has no pending request to answer.

        Nothing is saved or audited when one of these is raised.
        """

        conversation = await self._authorize(user_id, message.conversation_id)
        stored = await self.messages.get_messages(conversation.id)

        confirm_target: Message | None = None
        if message.confirm_response is not None:
            confirm_target = self._pending_confirmation(stored, message)
            anchor = index_messages(stored).get(confirm_target.parent or "")
            newest_first = path_to_root(stored, anchor) if anchor is not None else []
        else:
            newest_first = path_to_root(stored, message)

        budget = limit_messages(self.tokenizer, conversation.system_prompt, newest_first, conversation.token_limit)
        LOGGER.debug(
            "Budgeted %s of %s message(s), %s token(s), for conversation %s",
            len(budget.messages),
            len(newest_first),
            budget.token_count,
            conversation.id,
        )

        provider = self.provider_registry.create(conversation.provider, conversation.model)
        orchestrator = self._build_orchestrator(provider, conversation, user_id)
        request = ExchangeRequest(
            conversation_id=conversation.id,
            parent_id=message.id,
            llm_messages=_to_llm_messages(budget),
            history=list(reversed(newest_first)),
            user_id=user_id,
        )

        await self._save_user_message(conversation, user_id, message, budget.token_count)

        if confirm_target is not None:
            assert confirm_target.confirm_request is not None
            assert message.confirm_response is not None
            return orchestrator.start_resume(request, confirm_target.confirm_request, message.confirm_response)
        on_summarize = self._summarize_hook(provider, conversation, message) if message.parent is None else None
        return orchestrator.start(request, on_summarize=on_summarize)

    async def send(self, user_id: str, message: Message) -> ExchangeOutcome:
        """Run one exchange to completion without a transport attached."""

        stream = await self.handle_message(user_id, message)
        return await stream.wait()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _authorize(self, user_id: str, conversation_id: str) -> Conversation:
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            LOGGER.info("Rejected message for unknown conversation %s", conversation_id)
            raise ConversationNotFound(conversation_id)
        if conversation.owner_id != user_id:
            LOGGER.info("Rejected message from %s for conversation %s", user_id, conversation_id)
            raise ConversationForbidden(conversation_id, user_id)
        return conversation

    @staticmethod
    def _pending_confirmation(stored: list[Message], message: Message) -> Message:
        target = index_messages(stored).get(message.parent or "")
        if target is None or target.role != "assistant" or target.confirm_request is None:
            raise InvalidConfirmResponse(
                f"Message {message.id} does not answer a pending tool confirmation"
            )
        return target

    def _build_orchestrator(
        self,
        provider: CompletionProvider,
        conversation: Conversation,
        user_id: str,
    ) -> StreamOrchestrator:
        kind = ProviderType.parse(conversation.provider.provider_type)
        config = OrchestratorConfig(
            assistant_id=conversation.assistant_id,
            system_prompt=conversation.system_prompt,
            temperature=conversation.temperature,
            max_tool_iterations=self.max_tool_iterations,
            forward_user_id=kind in _USER_FORWARDING_PROVIDERS,
        )
        return StreamOrchestrator(
            provider,
            config,
            tools=self.tool_registry.functions_for(conversation.assistant_id),
            sink=_AssistantSink(self, conversation, user_id),
        )

    async def _save_user_message(
        self,
        conversation: Conversation,
        user_id: str,
        message: Message,
        token_count: int,
    ) -> None:
        await self.messages.save_message(message)
        await self.audit.append(
            AuditRecord(
                message_id=message.id,
                conversation_id=conversation.id,
                user_id=user_id,
                assistant_id=conversation.assistant_id,
                type="user",
                model=conversation.model,
                tokens=token_count,
                sent_at=message.sent_at,
            )
        )

    def _summarize_hook(
        self,
        provider: CompletionProvider,
        conversation: Conversation,
        user_message: Message,
    ) -> SummarizeHook | None:
        if not self.auto_summary:
            return None
        summarizer = Summarizer(
            provider,
            max_length=self.summary_max_length,
            temperature=conversation.temperature,
        )

        async def summarize(assistant_message: Message) -> str:
            summary = await summarizer.summarize(conversation, user_message, assistant_message)
            await self.conversations.rename_conversation(conversation.id, summary)
            return summary

        return summarize


def _to_llm_messages(budget: BudgetResult) -> list[LLMMessage]:
    # Paused assistant shells and confirmation answers carry no text.
    return [
        LLMMessage(role=message.role, content=message.content)
        for message in reversed(budget.messages)
        if message.content
    ]


def _describe_error(error: BaseException | None) -> str | None:
    if error is None:
        return None
    if isinstance(error, asyncio.CancelledError):
        return "cancelled"
    return str(error) or type(error).__name__


__all__ = ["ChatService"]
