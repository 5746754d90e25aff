"""DeepSeek API client implementation."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .base import OpenAICompatibleClient, Message, RetryConfig

DEFAULT_BASE_URL = "https://api.deepseek.com/v1"


class DeepSeekClient(OpenAICompatibleClient):
    """Streaming chat-completions client for the DeepSeek API."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        retry_config: RetryConfig | None = None,
    ) -> None:
        super().__init__(
            api_key,
            model,
            base_url=base_url,
            timeout=timeout,
            retry_config=retry_config,
            provider_name="DeepSeek",
        )

    def _prepare_payload(
        self,
        messages: Sequence[Message],
        model: str,
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        payload = super()._prepare_payload(messages, model, tools)
        # DeepSeek rejects empty assistant content next to tool calls.
        for entry in payload["messages"]:
            if entry.get("role") == "assistant" and entry.get("tool_calls") and not entry.get("content"):
                entry["content"] = None
        return payload


__all__ = ["DeepSeekClient", "DEFAULT_BASE_URL"]
