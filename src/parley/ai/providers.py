"""Provider selection keyed by backend kind."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

from .ai_types import CompletionProvider
from .anthropic_client import AnthropicClient
from .client import AIClient, ClientSettings

LOGGER = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Backend kinds a conversation may be configured with."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    TOGETHERAI = "togetherai"
    GROQ = "groq"
    OLLAMA = "ollama"
    LOCALAI = "localai"
    GENERIC_OPENAI = "generic-openai"
    LOGICLECLOUD = "logiclecloud"
    GCP_VERTEX = "gcp-vertex"

    @classmethod
    def parse(cls, value: "str | ProviderType | None") -> "ProviderType | None":
        """Return the matching member, or ``None`` for unknown values."""

        if isinstance(value, ProviderType):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


DEFAULT_PROVIDER = ProviderType.OPENAI

_OPENAI_COMPATIBLE_BASE_URLS: Mapping[ProviderType, str | None] = {
    ProviderType.OPENAI: None,
    ProviderType.TOGETHERAI: "https://api.together.xyz/v1",
    ProviderType.GROQ: "https://api.groq.com/openai/v1",
    ProviderType.OLLAMA: "http://localhost:11434/v1",
    ProviderType.LOCALAI: "http://localhost:8080/v1",
    ProviderType.GENERIC_OPENAI: None,
    ProviderType.LOGICLECLOUD: None,
}


@dataclass(slots=True)
class ProviderParams:
    """Credentials and endpoint for one configured backend."""

    provider_type: str | ProviderType = DEFAULT_PROVIDER
    api_key: str = ""
    base_url: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False

    def client_settings(self, model: str, *, base_url: str | None = None, stream_usage: bool = True) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url or base_url,
            api_key=self.api_key,
            model=model,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            stream_usage=stream_usage,
            debug_logging=self.debug_logging,
        )


ProviderFactory = Callable[[ProviderParams, str], CompletionProvider]


def _openai_compatible(kind: ProviderType) -> ProviderFactory:
    def factory(params: ProviderParams, model: str) -> CompletionProvider:
        settings = params.client_settings(
            model,
            base_url=_OPENAI_COMPATIBLE_BASE_URLS.get(kind),
            stream_usage=kind is ProviderType.OPENAI,
        )
        return AIClient(settings)

    return factory


def _anthropic(params: ProviderParams, model: str) -> CompletionProvider:
    return AnthropicClient(params.client_settings(model))


class ProviderRegistry:
    """Maps provider kinds to adapter factories with an explicit default.

    Kinds without a registered factory, including unknown strings, resolve to
    the default kind's factory.
    """

    def __init__(self, *, default: ProviderType = DEFAULT_PROVIDER) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {}
        self._default = default

    @property
    def default(self) -> ProviderType:
        return self._default

    def register(self, kind: ProviderType, factory: ProviderFactory) -> None:
        self._factories[kind] = factory

    def resolve(self, kind: str | ProviderType | None) -> ProviderType:
        """Return the kind whose factory will serve *kind*."""

        parsed = ProviderType.parse(kind)
        if parsed is not None and parsed in self._factories:
            return parsed
        LOGGER.warning("No provider registered for %r; using %s", kind, self._default.value)
        return self._default

    def create(self, params: ProviderParams, model: str) -> CompletionProvider:
        kind = self.resolve(params.provider_type)
        factory = self._factories.get(kind)
        if factory is None:
            raise LookupError(f"Default provider {kind.value} is not registered")
        LOGGER.debug("Creating %s provider for model %s", kind.value, model)
        return factory(params, model)


def default_provider_registry() -> ProviderRegistry:
    """Return a registry covering every built-in backend kind."""

    registry = ProviderRegistry()
    for kind in _OPENAI_COMPATIBLE_BASE_URLS:
        registry.register(kind, _openai_compatible(kind))
    registry.register(ProviderType.ANTHROPIC, _anthropic)
    return registry


def create_provider(params: ProviderParams, model: str, *, registry: ProviderRegistry | None = None) -> CompletionProvider:
    """Return a streaming provider handle for *params* and *model*."""

    return (registry or default_provider_registry()).create(params, model)


__all__ = [
    "DEFAULT_PROVIDER",
    "ProviderFactory",
    "ProviderParams",
    "ProviderRegistry",
    "ProviderType",
    "create_provider",
    "default_provider_registry",
]
