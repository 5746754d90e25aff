"""OpenRouter client: one API key, many upstream providers behind ``vendor/model`` ids."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .base import OpenAICompatibleClient, Message, RetryConfig

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_APP_NAME = "ai-project-agent"


class OpenRouterClient(OpenAICompatibleClient):
    """Stream completions through OpenRouter.

    ``routing`` is sent as the request's ``provider`` preferences (``order``,
    ``allow_fallbacks``, ``data_collection`` ...); ``only`` narrows it to the
    named upstreams. ``app_name`` and ``app_url`` are sent as the ``X-Title``
    and ``HTTP-Referer`` attribution headers.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        retry_config: RetryConfig | None = None,
        routing: Mapping[str, Any] | None = None,
        only: Sequence[str] | None = None,
        app_name: str | None = DEFAULT_APP_NAME,
        app_url: str | None = None,
    ) -> None:
        super().__init__(
            api_key,
            model,
            base_url=base_url,
            timeout=timeout,
            retry_config=retry_config,
            provider_name="OpenRouter",
        )
        self.routing: Dict[str, Any] = dict(routing or {})
        if only:
            self.routing["only"] = list(only)
        self._attribution: Dict[str, str] = {}
        if app_name:
            self._attribution["X-Title"] = app_name
        if app_url:
            self._attribution["HTTP-Referer"] = app_url

    def _build_headers(self, extra_headers: Dict[str, str] | None = None) -> Dict[str, str]:
        return super()._build_headers({**self._attribution, **(extra_headers or {})})

    def _prepare_payload(
        self,
        messages: Sequence[Message],
        model: str,
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        payload = super()._prepare_payload(messages, model, tools)
        if self.routing:
            payload["provider"] = dict(self.routing)
        return payload


__all__ = ["DEFAULT_APP_NAME", "DEFAULT_BASE_URL", "OpenRouterClient"]
