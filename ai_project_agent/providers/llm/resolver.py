"""Resolve ``provider/model`` identifiers into ready-to-use streaming clients."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ai_project_agent.core.utils.logger import get_logger

from .base import LLMClient, RetryConfig

LOGGER = get_logger(__name__)


def parse_provider_model(identifier: str, providers: Mapping[str, Any]) -> Tuple[str, str]:
    """Split ``"provider/model"`` on the first slash.

    Model names may themselves contain slashes (``openrouter/anthropic/claude``),
    so only the first segment is treated as the provider.
    """
    provider, sep, model = identifier.partition("/")
    if not sep or not provider or not model:
        raise ValueError(f"Model identifier must look like 'provider/model': {identifier!r}")
    if provider not in providers:
        known = ", ".join(sorted(providers)) or "none"
        raise ValueError(f"Unknown provider {provider!r} (configured: {known})")
    return provider, model


@dataclass(frozen=True)
class ResolvedModel:
    """Client plus the provider and model parts of a ``provider/model`` identifier."""

    provider: str
    model: str
    client: LLMClient

    @property
    def identifier(self) -> str:
        return f"{self.provider}/{self.model}"


ClientFactory = Callable[..., LLMClient]


class ProviderResolver:
    """Build and cache one client per configured provider."""

    def __init__(
        self,
        providers: Mapping[str, Mapping[str, Any]],
        *,
        api_key_lookup: Callable[[str], Optional[str]] | None = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._providers = {key: dict(value) for key, value in providers.items()}
        self._api_key_lookup = api_key_lookup or (lambda provider_id: self._providers[provider_id].get("api_key"))
        self._timeout = timeout
        self._max_retries = max_retries
        self._client_factory = client_factory
        self._clients: Dict[str, LLMClient] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "ProviderResolver":
        return cls(
            settings.providers,
            api_key_lookup=settings.provider_api_key,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            **kwargs,
        )

    def resolve(self, identifier: str) -> ResolvedModel:
        provider, model = parse_provider_model(identifier, self._providers)
        with self._lock:
            client = self._clients.get(provider)
            if client is None:
                client = self._build_client(provider, model)
                self._clients[provider] = client
        return ResolvedModel(provider=provider, model=model, client=client)

    def _build_client(self, provider: str, model: str) -> LLMClient:
        # Imported lazily to avoid a cycle with the package __init__.
        from . import create_client

        entry = self._providers[provider]
        factory = self._client_factory or create_client
        extra = {
            key: value
            for key, value in entry.items()
            if key not in {"kind", "base_url", "api_key"}
        }
        LOGGER.debug("Creating %s client for provider %s", entry.get("kind", provider), provider)
        return factory(
            entry.get("kind", provider),
            self._api_key_lookup(provider),
            model,
            base_url=entry.get("base_url"),
            timeout=self._timeout,
            retry_config=RetryConfig(max_retries=max(1, self._max_retries)),
            **extra,
        )


__all__ = ["ProviderResolver", "ResolvedModel", "parse_provider_model"]
