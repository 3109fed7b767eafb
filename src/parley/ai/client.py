"""OpenAI-compatible streaming adapter and the token counters shared by every provider."""

from __future__ import annotations

import functools
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

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
from .tools.base import ToolFunction

LOGGER = logging.getLogger(__name__)
DEFAULT_ENCODING = "cl100k_base"
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIStatusError,
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    httpx.TimeoutException,
)


# ---------------------------------------------------------------------------
# Token counting
# ---------------------------------------------------------------------------


class ApproxByteCounter(TokenCounterProtocol):
    """Offline estimate: one token per *bytes_per_token* UTF-8 bytes, rounded up."""

    def __init__(self, *, bytes_per_token: int = 4, model_name: str | None = None) -> None:
        self.model_name = model_name
        self._divisor = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        size = len(text.encode("utf-8", errors="ignore")) if text else 0
        return -(-size // self._divisor)


class TiktokenCounter(TokenCounterProtocol):
    """Exact counts from ``tiktoken``; byte estimates when no encoding can be loaded."""

    def __init__(self, model_name: str | None = None, *, encoding_name: str | None = None) -> None:
        if not (model_name or encoding_name):
            raise ValueError("TiktokenCounter needs a model or an encoding name")
        self.model_name = model_name
        self._encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None
        self._estimator = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            encoding = self._resolve()
        except Exception:  # pragma: no cover - encoding files are fetched lazily
            LOGGER.debug("No encoding for %s; estimating", self.model_name or self._encoding_name, exc_info=True)
            return self._estimator.estimate(text)
        return len(encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._estimator.estimate(text)

    def _resolve(self) -> tiktoken.Encoding:
        if self._encoding is not None:
            return self._encoding
        if self._encoding_name:
            self._encoding = tiktoken.get_encoding(self._encoding_name)
            return self._encoding
        try:
            self._encoding = tiktoken.encoding_for_model(cast(str, self.model_name))
        except KeyError:
            LOGGER.debug("tiktoken has no mapping for %s; using %s", self.model_name, DEFAULT_ENCODING)
            self._encoding = tiktoken.get_encoding(DEFAULT_ENCODING)
        return self._encoding


@functools.lru_cache(maxsize=32)
def counter_for_model(model_name: str | None) -> TokenCounterProtocol:
    """Return the shared counter for *model_name*; blank names get ``cl100k_base``."""

    name = (model_name or "").strip()
    return TiktokenCounter(name) if name else TiktokenCounter(encoding_name=DEFAULT_ENCODING)


def default_encoding() -> TokenCounterProtocol:
    """Return the ``cl100k_base`` counter used for budgeting and audit counts."""

    return counter_for_model(None)


def build_retrying(settings: "ClientSettings", predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
    """Return the exponential-backoff policy shared by every streaming adapter."""

    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, settings.max_retries)),
        wait=wait_exponential(
            multiplier=settings.retry_min_seconds,
            max=settings.retry_max_seconds,
        ),
        retry=retry_if_exception(predicate),
    )


@dataclass(slots=True)
class ClientSettings:
    """Connection and retry options for one streaming adapter."""

    base_url: str | None
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    stream_usage: bool = True
    max_output_tokens: int = 4096
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Streaming adapter for OpenAI-compatible chat completion endpoints.

    Raw completion chunks are folded into the provider-neutral chunk sequence:
    text deltas pass straight through, tool-call fragments are tracked per
    index and reported as start/delta/complete, and a single
    :class:`TurnFinished` closes every turn.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
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

    @property
    def tokenizer(self) -> TokenCounterProtocol:
        return self._tokenizer

    def count_tokens(self, text: str) -> int:
        return self._tokenizer.count(text) if text else 0

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

        payload = self._build_chat_payload(
            messages=self._coerce_messages(system_prompt, messages),
            tools=tools,
            temperature=temperature,
            user=user,
        )
        LOGGER.debug(
            "Streaming %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        # Retrying after the first yielded chunk would duplicate output downstream.
        started = False

        def _should_retry(exc: BaseException) -> bool:
            return not started and isinstance(exc, _RETRYABLE_ERRORS)

        async for attempt in self._retrying(_should_retry):
            with attempt:
                stream = await self._client.chat.completions.create(**payload)
                async for chunk in self._normalize_stream(stream):
                    started = True
                    yield chunk

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return build_retrying(self._settings, predicate)

    def _coerce_messages(self, system_prompt: str, messages: Sequence[LLMMessage]) -> List[ChatCompletionMessageParam]:
        normalized: List[Dict[str, Any]] = []
        if system_prompt:
            normalized.append({"role": "system", "content": system_prompt})
        for message in messages:
            if message.tool_call is not None:
                normalized.append(
                    {
                        "role": "assistant",
                        "content": message.content or None,
                        "tool_calls": [
                            {
                                "id": message.tool_call.id,
                                "type": "function",
                                "function": {
                                    "name": message.tool_call.name,
                                    "arguments": json.dumps(message.tool_call.arguments, ensure_ascii=False),
                                },
                            }
                        ],
                    }
                )
            elif message.role == "tool":
                normalized.append(
                    {"role": "tool", "tool_call_id": message.tool_call_id or "", "content": message.content}
                )
            else:
                normalized.append({"role": message.role, "content": message.content})
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return cast(List[ChatCompletionMessageParam], normalized)

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Sequence[ToolFunction] | None,
        temperature: float | None,
        user: str | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
            "stream": True,
        }
        if self._settings.stream_usage:
            payload["stream_options"] = {"include_usage": True}
        if tools:
            payload["tools"] = [tool.as_openai_tool() for tool in tools]
            payload["tool_choice"] = "auto"
        if temperature is not None:
            payload["temperature"] = temperature
        if user:
            payload["user"] = user
        return payload

    async def _normalize_stream(self, stream: AsyncIterator[Any]) -> AsyncIterator[ProviderChunk]:
        calls: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        usage: TokenUsage | None = None

        async for chunk in stream:
            raw_usage = getattr(chunk, "usage", None)
            if raw_usage is not None:
                usage = TokenUsage(
                    prompt_tokens=int(getattr(raw_usage, "prompt_tokens", 0) or 0),
                    completion_tokens=int(getattr(raw_usage, "completion_tokens", 0) or 0),
                )
            for choice in getattr(chunk, "choices", None) or ():
                delta = getattr(choice, "delta", None)
                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason
                if delta is None:
                    continue
                text = getattr(delta, "content", None)
                if text:
                    yield TextDelta(text=str(text))
                for fragment in getattr(delta, "tool_calls", None) or ():
                    for normalized in self._track_tool_fragment(calls, fragment):
                        yield normalized

        for index in sorted(calls):
            state = calls[index]
            yield ToolCallComplete(
                tool_call_id=state["id"],
                tool_name=state["name"],
                arguments_text=state["arguments"],
            )
        yield TurnFinished(finish_reason=finish_reason, usage=usage)

    @staticmethod
    def _track_tool_fragment(calls: dict[int, dict[str, Any]], fragment: Any) -> list[ProviderChunk]:
        index = int(getattr(fragment, "index", 0) or 0)
        state = calls.setdefault(index, {"id": "", "name": "", "arguments": "", "started": False})
        function = getattr(fragment, "function", None)
        if getattr(fragment, "id", None):
            state["id"] = fragment.id
        name = getattr(function, "name", None) if function is not None else None
        if name:
            state["name"] += name
        emitted: list[ProviderChunk] = []
        if not state["started"] and state["name"]:
            state["started"] = True
            emitted.append(ToolCallStart(tool_call_id=state["id"], tool_name=state["name"]))
        arguments = getattr(function, "arguments", None) if function is not None else None
        if arguments:
            state["arguments"] += arguments
            emitted.append(
                ToolCallDelta(tool_call_id=state["id"], tool_name=state["name"], arguments_delta=arguments)
            )
        return emitted

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        LOGGER.debug("Request body for %s:\n%s", self._settings.model, json.dumps(payload, ensure_ascii=False, indent=2, default=str))

    async def aclose(self) -> None:
        """Release the HTTP connections held by the OpenAI client."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


__all__ = [
    "AIClient",
    "ApproxByteCounter",
    "ClientSettings",
    "DEFAULT_ENCODING",
    "TiktokenCounter",
    "counter_for_model",
    "default_encoding",
]
