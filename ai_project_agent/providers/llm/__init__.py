"""Provider client construction keyed by provider kind (``kind`` in the config)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional, Type

from .base import (
    HTTPChatLLMClient,
    LLMAuthenticationError,
    LLMClient,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
    LLMRetryExhaustedError,
    LLMTimeoutError,
    Message,
    OpenAICompatibleClient,
    RetryConfig,
    StreamEvent,
    StreamFinish,
    TextDelta,
    ToolCallDelta,
    TurnError,
)
from .deepseek import DeepSeekClient, DEFAULT_BASE_URL as DEEPSEEK_DEFAULT_BASE_URL
from .openrouter import OpenRouterClient, DEFAULT_BASE_URL as OPENROUTER_DEFAULT_BASE_URL

_TRANSPORT_OPTIONS = frozenset({"timeout", "retry_config"})


@dataclass(frozen=True)
class ProviderKind:
    client_cls: Type[HTTPChatLLMClient]
    default_base_url: Optional[str] = None
    options: FrozenSet[str] = _TRANSPORT_OPTIONS


PROVIDER_KINDS = {
    "deepseek": ProviderKind(DeepSeekClient, DEEPSEEK_DEFAULT_BASE_URL),
    "openrouter": ProviderKind(
        OpenRouterClient,
        OPENROUTER_DEFAULT_BASE_URL,
        _TRANSPORT_OPTIONS | {"routing", "only", "app_name", "app_url"},
    ),
    # Any other OpenAI-compatible endpoint; needs an explicit base_url.
    "openai": ProviderKind(OpenAICompatibleClient),
}


def create_client(
    kind: str,
    api_key: str | None,
    model: str,
    base_url: str | None = None,
    **options,
) -> LLMClient:
    """Build the streaming client for ``kind``.

    Options the client class does not understand (for example routing
    preferences on a plain endpoint) are dropped.
    """
    try:
        provider_kind = PROVIDER_KINDS[kind.lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported LLM provider: {kind}") from exc

    effective_base_url = base_url or provider_kind.default_base_url
    if not effective_base_url:
        raise ValueError(f"Provider {kind!r} requires a base_url")
    accepted = {key: value for key, value in options.items() if key in provider_kind.options}
    return provider_kind.client_cls(api_key=api_key, model=model, base_url=effective_base_url, **accepted)


from .resolver import ProviderResolver, ResolvedModel, parse_provider_model  # noqa: E402

__all__ = [
    "DEEPSEEK_DEFAULT_BASE_URL",
    "OPENROUTER_DEFAULT_BASE_URL",
    "PROVIDER_KINDS",
    "DeepSeekClient",
    "HTTPChatLLMClient",
    "LLMAuthenticationError",
    "LLMClient",
    "LLMConnectionError",
    "LLMError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMRetryExhaustedError",
    "LLMTimeoutError",
    "Message",
    "OpenAICompatibleClient",
    "OpenRouterClient",
    "ProviderKind",
    "ProviderResolver",
    "ResolvedModel",
    "RetryConfig",
    "StreamEvent",
    "StreamFinish",
    "TextDelta",
    "ToolCallDelta",
    "TurnError",
    "create_client",
    "parse_provider_model",
]
