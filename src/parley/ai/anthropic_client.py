"""Streaming adapter for the Anthropic Messages API."""

from __future__ import annotations

import inspect
import logging
from typing import Any, AsyncIterator, Dict, List, Sequence

import anthropic
import httpx

from .ai_types import (
    LLMMessage,
    ProviderChunk,
    TextDelta,
    TokenCounterProtocol,
    TokenUsage,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
    TurnFinished,
)
from .client import ClientSettings, build_retrying, counter_for_model
from .tools.base import ToolFunction

LOGGER = logging.getLogger(__name__)
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIStatusError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.RateLimitError,
    httpx.TimeoutException,
)


class AnthropicClient:
    """Translate Anthropic stream events into provider-neutral chunks.

    ``content_block_start`` of a ``tool_use`` block opens a tool call,
    ``input_json_delta`` fragments extend its argument buffer and
    ``content_block_stop`` completes it. ``message_delta`` carries the stop
    reason and output usage reported by :class:`TurnFinished`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: anthropic.AsyncAnthropic | None = None,
        tokenizer: TokenCounterProtocol | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._tokenizer = tokenizer or counter_for_model(settings.model)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model_name(self) -> str:
        return self._settings.model

    def count_tokens(self, text: str) -> int:
        return self._tokenizer.count(text) if text else 0

    def _build_client(self, settings: ClientSettings) -> anthropic.AsyncAnthropic:
        kwargs: Dict[str, Any] = {
            "api_key": settings.api_key,
            "timeout": settings.request_timeout,
            "max_retries": 0,
        }
        if settings.base_url:
            kwargs["base_url"] = settings.base_url
        if settings.default_headers:
            kwargs["default_headers"] = dict(settings.default_headers)
        return anthropic.AsyncAnthropic(**kwargs)

    async def stream_completion(
        self,
        system_prompt: str,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolFunction] | None = None,
        temperature: float | None = None,
        user: str | None = None,
    ) -> AsyncIterator[ProviderChunk]:
        """Stream a completion for *messages* as provider-neutral chunks."""

        params = self._build_request(system_prompt, messages, tools=tools, temperature=temperature, user=user)
        LOGGER.debug(
            "Calling Anthropic stream via %s with %s message(s)",
            self._settings.model,
            len(params["messages"]),
        )

        started = False

        def _should_retry(exc: BaseException) -> bool:
            return not started and isinstance(exc, _RETRYABLE_ERRORS)

        async for attempt in build_retrying(self._settings, _should_retry):
            with attempt:
                stream = await self._client.messages.create(**params)
                async for chunk in self._normalize_stream(stream):
                    started = True
                    yield chunk

    def _build_request(
        self,
        system_prompt: str,
        messages: Sequence[LLMMessage],
        *,
        tools: Sequence[ToolFunction] | None,
        temperature: float | None,
        user: str | None,
    ) -> Dict[str, Any]:
        system_parts = [system_prompt] if system_prompt else []
        converted: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                system_parts.append(message.content)
            elif message.tool_call is not None:
                converted.append(
                    {
                        "role": "assistant",
                        "content": [
                            {
                                "type": "tool_use",
                                "id": message.tool_call.id,
                                "name": message.tool_call.name,
                                "input": message.tool_call.arguments or {},
                            }
                        ],
                    }
                )
            elif message.role == "tool":
                converted.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": message.tool_call_id or "",
                                "content": message.content,
                            }
                        ],
                    }
                )
            else:
                converted.append({"role": message.role, "content": message.content})
        if not converted:
            raise ValueError("At least one message is required to start a chat")

        params: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": converted,
            "max_tokens": self._settings.max_output_tokens,
            "stream": True,
        }
        if system_parts:
            params["system"] = "\n\n".join(system_parts)
        if tools:
            params["tools"] = [tool.as_anthropic_tool() for tool in tools]
            params["tool_choice"] = {"type": "auto"}
        if temperature is not None:
            params["temperature"] = temperature
        if user:
            params["metadata"] = {"user_id": user}
        return params

    async def _normalize_stream(self, stream: AsyncIterator[Any]) -> AsyncIterator[ProviderChunk]:
        blocks: dict[int, dict[str, Any]] = {}
        prompt_tokens = 0
        completion_tokens = 0
        stop_reason: str | None = None

        async for event in stream:
            event_type = getattr(event, "type", None)
            if event_type == "message_start":
                usage = getattr(getattr(event, "message", None), "usage", None)
                prompt_tokens = int(getattr(usage, "input_tokens", 0) or 0)
            elif event_type == "content_block_start":
                block = event.content_block
                if getattr(block, "type", None) == "tool_use":
                    blocks[event.index] = {"id": block.id, "name": block.name, "arguments": ""}
                    yield ToolCallStart(tool_call_id=block.id, tool_name=block.name)
            elif event_type == "content_block_delta":
                delta = event.delta
                delta_type = getattr(delta, "type", None)
                if delta_type == "text_delta" and delta.text:
                    yield TextDelta(text=delta.text)
                elif delta_type == "input_json_delta" and event.index in blocks:
                    state = blocks[event.index]
                    state["arguments"] += delta.partial_json
                    if delta.partial_json:
                        yield ToolCallDelta(
                            tool_call_id=state["id"],
                            tool_name=state["name"],
                            arguments_delta=delta.partial_json,
                        )
            elif event_type == "content_block_stop":
                state = blocks.pop(event.index, None)
                if state is not None:
                    yield ToolCallComplete(
                        tool_call_id=state["id"],
                        tool_name=state["name"],
                        arguments={} if not state["arguments"] else None,
                        arguments_text=state["arguments"] or None,
                    )
            elif event_type == "message_delta":
                stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                usage = getattr(event, "usage", None)
                completion_tokens = int(getattr(usage, "output_tokens", 0) or 0)

        yield TurnFinished(
            finish_reason=stop_reason,
            usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        )

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


__all__ = ["AnthropicClient"]
