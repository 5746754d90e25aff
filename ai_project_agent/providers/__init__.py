"""External service provider integrations."""
from __future__ import annotations

from . import llm
from .llm import (
    DEEPSEEK_DEFAULT_BASE_URL,
    LLMClient,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
    LLMRetryExhaustedError,
    LLMTimeoutError,
    Message,
    OPENROUTER_DEFAULT_BASE_URL,
    ProviderResolver,
    ResolvedModel,
    RetryConfig,
    create_client,
    parse_provider_model,
)

__all__ = [
    "DEEPSEEK_DEFAULT_BASE_URL",
    "LLMClient",
    "LLMConnectionError",
    "LLMError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMRetryExhaustedError",
    "LLMTimeoutError",
    "Message",
    "OPENROUTER_DEFAULT_BASE_URL",
    "ProviderResolver",
    "ResolvedModel",
    "RetryConfig",
    "create_client",
    "llm",
    "parse_provider_model",
]
