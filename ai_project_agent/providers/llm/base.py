"""Abstractions for streaming chat-completion providers."""
from __future__ import annotations

import json
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Union

import requests

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.cost_tracker import TokenUsage
from ai_project_agent.core.utils.logger import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class TurnError:
    """Structured failure attached to a turn so a UI can offer recovery actions."""

    kind: str
    message: str
    tool_call_id: str | None = None
    model: str | None = None
    recoverable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "tool_call_id": self.tool_call_id,
            "model": self.model,
            "recoverable": self.recoverable,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TurnError":
        return cls(
            kind=str(data.get("kind", "internal")),
            message=str(data.get("message", "")),
            tool_call_id=data.get("tool_call_id"),
            model=data.get("model"),
            recoverable=bool(data.get("recoverable", True)),
        )


@dataclass(frozen=True)
class Message:
    role: str
    content: str | None = None
    tool_call_id: str | None = None
    tool_calls: List[Dict[str, Any]] | None = None
    error: TurnError | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role}
        if self.content is not None:
            payload["content"] = self.content
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = self.tool_calls
        return payload

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_payload()
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        error = data.get("error")
        return cls(
            role=str(data["role"]),
            content=data.get("content"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=data.get("tool_calls") or None,
            error=TurnError.from_dict(error) if isinstance(error, Mapping) else None,
        )


# Stream events ---------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """Fragment of a tool call; fragments sharing an ``index`` belong together."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class StreamFinish:
    finish_reason: str | None = None
    usage: TokenUsage | None = None


StreamEvent = Union[TextDelta, ToolCallDelta, StreamFinish]


@dataclass
class RetryConfig:
    """Configuration for retry behavior when opening a stream."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.1
    retryable_status_codes: set[int] = field(default_factory=lambda: {429, 500, 502, 503, 504})


class LLMError(RuntimeError):
    """Raised when an LLM provider encounters an error."""


class LLMRateLimitError(LLMError):
    """Raised when the provider reports a rate limit condition."""


class LLMTimeoutError(LLMError):
    """Raised when a request times out before the provider responds."""


class LLMConnectionError(LLMError):
    """Raised when the client is unable to reach the provider."""


class LLMAuthenticationError(LLMError):
    """Raised when the provider rejects the configured credentials."""


class LLMResponseError(LLMError):
    """Raised when the provider returns a malformed or error response."""


class LLMRetryExhaustedError(LLMError):
    """Raised when retry attempts are exhausted without success."""


class LLMClient(Protocol):
    """Protocol for streaming chat-completion clients."""

    def stream_completion(
        self,
        messages: Sequence[Message],
        model: str | None = None,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        cancellation: CancellationToken | None = None,
    ) -> Iterator[StreamEvent]:
        """Yield text and tool-call fragments, then a single :class:`StreamFinish`.

        When ``cancellation`` fires the iterator stops early without a finish event.
        """
        ...


class HTTPChatLLMClient(LLMClient, ABC):
    """Common HTTP/JSON streaming functionality shared by provider implementations."""

    _COMPLETIONS_PATH = "/chat/completions"

    def __init__(
        self,
        provider_name: str,
        api_key: str | None,
        model: str,
        *,
        base_url: str,
        timeout: float = 120.0,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._provider_name = provider_name
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _request_url(self) -> str:
        return f"{self.base_url}{self._COMPLETIONS_PATH}"

    def _build_headers(self, extra_headers: Dict[str, str] | None = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra_headers:
            headers.update(extra_headers)
        return headers

    def _error_from_status(self, status_code: int, response_text: str) -> LLMError:
        message = f"{self._provider_name} API error {status_code}: {response_text}"
        if status_code == 429:
            return LLMRateLimitError(message)
        if status_code in {401, 403}:
            return LLMAuthenticationError(message)
        if status_code in {408, 504}:
            return LLMTimeoutError(message)
        if status_code in {502, 503}:
            return LLMConnectionError(message)
        return LLMResponseError(message)

    def _calculate_delay(self, attempt: int) -> float:
        base_delay = min(
            self.retry_config.max_delay,
            self.retry_config.initial_delay * (self.retry_config.backoff_multiplier ** (attempt - 1)),
        )
        if base_delay <= 0:
            return 0.0
        jitter_ratio = max(0.0, self.retry_config.jitter_ratio)
        if jitter_ratio == 0:
            return base_delay
        jitter_span = base_delay * jitter_ratio
        lower = max(0.0, base_delay - jitter_span)
        upper = base_delay + jitter_span
        return random.uniform(lower, upper)

    def _wrap_transport_error(self, exc: Exception) -> LLMError:
        if isinstance(exc, requests.Timeout):
            return LLMTimeoutError(f"{self._provider_name} request timed out: {exc}")
        return LLMConnectionError(f"{self._provider_name} connection failed: {exc}")

    def _open_stream(
        self,
        payload: Dict[str, Any],
        cancellation: CancellationToken | None,
    ) -> requests.Response | None:
        """POST the streaming request, retrying transient failures with backoff.

        Returns ``None`` when cancellation is requested before a response is open.
        """
        url = self._request_url()
        headers = self._build_headers()
        body = json.dumps(payload)
        last_error: LLMError | None = None

        for attempt in range(1, self.retry_config.max_retries + 1):
            if cancellation is not None and cancellation.cancelled:
                return None
            try:
                response = requests.post(
                    url,
                    headers=headers,
                    data=body,
                    timeout=self.timeout,
                    stream=True,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = self._wrap_transport_error(exc)
                if attempt == self.retry_config.max_retries:
                    raise last_error from exc
            except requests.RequestException as exc:
                raise LLMResponseError(f"{self._provider_name} request failed: {exc}") from exc
            else:
                if response.status_code < 400:
                    return response
                error = self._error_from_status(response.status_code, response.text)
                response.close()
                if response.status_code not in self.retry_config.retryable_status_codes:
                    raise error
                last_error = error
                if attempt == self.retry_config.max_retries:
                    raise LLMRetryExhaustedError(
                        f"{self._provider_name} request exhausted retries: {error}"
                    ) from error

            delay = self._calculate_delay(attempt)
            LOGGER.warning(
                "%s request failed (attempt %d/%d), retrying in %.2fs: %s",
                self._provider_name,
                attempt,
                self.retry_config.max_retries,
                delay,
                last_error,
            )
            if cancellation is not None:
                if cancellation.wait(delay):
                    return None
            elif delay:
                time.sleep(delay)

        raise LLMRetryExhaustedError(
            f"{self._provider_name} request failed after {self.retry_config.max_retries} attempts: {last_error}"
        )

    # ------------------------------------------------------------------
    # High level API
    # ------------------------------------------------------------------

    @abstractmethod
    def _prepare_payload(
        self,
        messages: Sequence[Message],
        model: str,
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Return the provider-specific request payload."""

    def stream_completion(
        self,
        messages: Sequence[Message],
        model: str | None = None,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        cancellation: CancellationToken | None = None,
    ) -> Iterator[StreamEvent]:
        payload = self._prepare_payload(messages, model or self.model, tools)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        response = self._open_stream(payload, cancellation)
        if response is None:
            return

        unregister = cancellation.add_callback(response.close) if cancellation is not None else None
        finish_reason: str | None = None
        usage: TokenUsage | None = None
        try:
            with response:
                # Event streams are UTF-8 regardless of the charset requests guesses.
                for raw_line in response.iter_lines():
                    if cancellation is not None and cancellation.cancelled:
                        return
                    line = raw_line.decode("utf-8", errors="replace")
                    if not line or not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        continue
                    if data.get("error"):
                        raise LLMResponseError(f"{self._provider_name} stream error: {data['error']}")
                    usage = TokenUsage.from_payload(data.get("usage")) or usage
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    yield from self._parse_stream_delta(choice.get("delta") or {})
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except LLMError:
            raise
        except Exception as exc:
            # Closing the response from the cancelling thread surfaces as an
            # arbitrary transport error inside iter_lines.
            if cancellation is not None and cancellation.cancelled:
                return
            if isinstance(exc, requests.RequestException):
                raise self._wrap_transport_error(exc) from exc
            raise
        finally:
            if unregister is not None:
                unregister()

        if cancellation is not None and cancellation.cancelled:
            return
        yield StreamFinish(finish_reason=finish_reason, usage=usage)

    # ------------------------------------------------------------------
    # Response parsing helpers
    # ------------------------------------------------------------------

    def _parse_stream_delta(self, delta: Mapping[str, Any]) -> Iterator[StreamEvent]:
        content = delta.get("content")
        if content:
            yield TextDelta(content if isinstance(content, str) else str(content))
        for call in delta.get("tool_calls") or []:
            function_data = call.get("function") or {}
            yield ToolCallDelta(
                index=int(call.get("index", 0) or 0),
                id=call.get("id") or None,
                name=function_data.get("name") or None,
                arguments=function_data.get("arguments") or "",
            )


class OpenAICompatibleClient(HTTPChatLLMClient):
    """Client for any endpoint speaking the OpenAI chat-completions dialect."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        base_url: str,
        timeout: float = 120.0,
        retry_config: RetryConfig | None = None,
        provider_name: str = "OpenAI-compatible",
    ) -> None:
        super().__init__(
            provider_name,
            api_key,
            model,
            base_url=base_url,
            timeout=timeout,
            retry_config=retry_config,
        )

    def _prepare_payload(
        self,
        messages: Sequence[Message],
        model: str,
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [message.to_payload() for message in messages],
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload


__all__ = [
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
    "RetryConfig",
    "StreamEvent",
    "StreamFinish",
    "TextDelta",
    "ToolCallDelta",
    "TurnError",
]
