import io
import json

import pytest
import requests

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.providers.llm import create_client
from ai_project_agent.providers.llm.base import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMResponseError,
    LLMRetryExhaustedError,
    Message,
    OpenAICompatibleClient,
    RetryConfig,
    StreamFinish,
    TextDelta,
    ToolCallDelta,
)
from ai_project_agent.providers.llm.deepseek import DeepSeekClient
from ai_project_agent.providers.llm.openrouter import OpenRouterClient
from ai_project_agent.providers.llm.resolver import ProviderResolver, parse_provider_model


class FakeResponse:
    def __init__(self, lines=(), status_code=200, text=""):
        self.lines = list(lines)
        self.status_code = status_code
        self.text = text
        self.closed = False

    def iter_lines(self):
        for line in self.lines:
            if self.closed:
                raise requests.ConnectionError("connection closed")
            yield line.encode("utf-8")

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


def _sse(*chunks):
    return [f"data: {json.dumps(chunk)}" for chunk in chunks] + ["data: [DONE]"]


def _install_post(monkeypatch, *responses):
    captured = []
    queue = list(responses)

    def fake_post(url, headers=None, data=None, timeout=None, stream=False):
        captured.append({"url": url, "headers": headers, "payload": json.loads(data), "stream": stream})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr("ai_project_agent.providers.llm.base.requests.post", fake_post)
    return captured


def test_backoff_jitter_range(monkeypatch):
    config = RetryConfig(initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0, jitter_ratio=0.25)
    client = DeepSeekClient(api_key="test", model="demo", retry_config=config)

    captured = {}

    def fake_uniform(low: float, high: float) -> float:
        captured["low"] = low
        captured["high"] = high
        return high

    monkeypatch.setattr("ai_project_agent.providers.llm.base.random.uniform", fake_uniform)

    delay = client._calculate_delay(3)

    assert delay == pytest.approx(5.0)
    assert captured["low"] == pytest.approx(3.0)
    assert captured["high"] == pytest.approx(5.0)


def test_error_mapping():
    client = DeepSeekClient(api_key="test", model="demo")

    assert isinstance(client._error_from_status(429, "Too Many Requests"), LLMRateLimitError)
    assert isinstance(client._error_from_status(401, "Unauthorized"), LLMAuthenticationError)
    assert isinstance(client._error_from_status(503, "Unavailable"), LLMConnectionError)
    assert isinstance(client._error_from_status(500, "Server error"), LLMResponseError)


def test_stream_yields_text_tool_fragments_and_usage(monkeypatch):
    response = FakeResponse(
        _sse(
            {"choices": [{"delta": {"content": "Reading "}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": "{\"pa"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "th\": \"a\"}"}}]}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18}},
        )
    )
    captured = _install_post(monkeypatch, response)
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1/")

    events = list(client.stream_completion([Message(role="user", content="hi")], tools=[{"type": "function"}]))

    assert events[0] == TextDelta("Reading ")
    assert events[1] == ToolCallDelta(index=0, id="call_1", name="read_file", arguments='{"pa')
    assert events[2] == ToolCallDelta(index=0, id=None, name=None, arguments='th": "a"}')
    finish = events[-1]
    assert isinstance(finish, StreamFinish)
    assert finish.finish_reason == "tool_calls"
    assert finish.usage.prompt_tokens == 11
    request = captured[0]
    assert request["url"] == "https://llm.example/v1/chat/completions"
    assert request["stream"] is True
    assert request["headers"]["Authorization"] == "Bearer k"
    assert request["payload"]["stream"] is True
    assert request["payload"]["stream_options"] == {"include_usage": True}
    assert request["payload"]["tool_choice"] == "auto"
    assert response.closed


def test_stream_decodes_utf8_without_charset_header(monkeypatch):
    chunks = [
        {"choices": [{"delta": {"content": "héllo 世界"}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "write", "arguments": "{\"text\": \"ü\"}"}}]}}]},
    ]
    body = "".join(f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
    response = requests.Response()
    response.status_code = 200
    response.headers["Content-Type"] = "text/event-stream"
    response.raw = io.BytesIO(body.encode("utf-8"))
    _install_post(monkeypatch, response)
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1")

    events = list(client.stream_completion([Message(role="user", content="hi")]))

    assert events[0] == TextDelta("héllo 世界")
    assert events[1].arguments == '{"text": "ü"}'
    assert isinstance(events[-1], StreamFinish)


def test_stream_error_chunk_raises(monkeypatch):
    _install_post(monkeypatch, FakeResponse(["data: " + json.dumps({"error": {"message": "overloaded"}})]))
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1")

    with pytest.raises(LLMResponseError, match="overloaded"):
        list(client.stream_completion([Message(role="user", content="hi")]))


def test_retryable_status_is_retried_then_exhausted(monkeypatch):
    monkeypatch.setattr("ai_project_agent.providers.llm.base.time.sleep", lambda seconds: None)
    captured = _install_post(monkeypatch, FakeResponse(status_code=503, text="busy"))
    client = OpenAICompatibleClient(
        api_key="k", model="gpt", base_url="https://llm.example/v1", retry_config=RetryConfig(max_retries=3)
    )

    with pytest.raises(LLMRetryExhaustedError) as excinfo:
        list(client.stream_completion([Message(role="user", content="hi")]))

    assert len(captured) == 3
    assert isinstance(excinfo.value.__cause__, LLMConnectionError)


def test_client_error_is_not_retried(monkeypatch):
    captured = _install_post(monkeypatch, FakeResponse(status_code=401, text="bad key"))
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1")

    with pytest.raises(LLMAuthenticationError):
        list(client.stream_completion([Message(role="user", content="hi")]))

    assert len(captured) == 1


def test_transport_errors_are_wrapped(monkeypatch):
    monkeypatch.setattr("ai_project_agent.providers.llm.base.time.sleep", lambda seconds: None)
    _install_post(monkeypatch, requests.ConnectionError("refused"))
    client = OpenAICompatibleClient(
        api_key="k", model="gpt", base_url="https://llm.example/v1", retry_config=RetryConfig(max_retries=2)
    )

    with pytest.raises(LLMConnectionError, match="refused"):
        list(client.stream_completion([Message(role="user", content="hi")]))


def test_cancellation_closes_the_stream(monkeypatch):
    token = CancellationToken()
    response = FakeResponse(
        _sse(
            {"choices": [{"delta": {"content": "one"}}]},
            {"choices": [{"delta": {"content": "two"}}]},
        )
    )
    _install_post(monkeypatch, response)
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1")

    received = []
    for event in client.stream_completion([Message(role="user", content="hi")], cancellation=token):
        received.append(event)
        token.cancel()

    assert received == [TextDelta("one")]
    assert response.closed


def test_cancelled_before_request_sends_nothing(monkeypatch):
    captured = _install_post(monkeypatch, FakeResponse(_sse()))
    token = CancellationToken()
    token.cancel()
    client = OpenAICompatibleClient(api_key="k", model="gpt", base_url="https://llm.example/v1")

    assert list(client.stream_completion([Message(role="user", content="hi")], cancellation=token)) == []
    assert captured == []


def test_openrouter_provider_routing_and_headers(monkeypatch):
    captured = _install_post(monkeypatch, FakeResponse(_sse()))
    client = OpenRouterClient(
        api_key="k",
        model="anthropic/claude-sonnet-4",
        routing={"allow_fallbacks": False},
        only=["Anthropic"],
        app_url="https://example.com",
    )

    list(client.stream_completion([Message(role="user", content="hi")]))

    request = captured[0]
    assert request["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert request["payload"]["model"] == "anthropic/claude-sonnet-4"
    assert request["payload"]["provider"] == {"allow_fallbacks": False, "only": ["Anthropic"]}
    assert request["headers"]["HTTP-Referer"] == "https://example.com"
    assert request["headers"]["X-Title"] == "ai-project-agent"
    assert request["headers"]["Authorization"] == "Bearer k"


def test_deepseek_sends_null_content_next_to_tool_calls():
    client = DeepSeekClient(api_key="k", model="deepseek-chat")
    messages = [
        Message(role="user", content="hi"),
        Message(role="assistant", content="", tool_calls=[{"id": "c", "type": "function", "function": {"name": "f", "arguments": "{}"}}]),
        Message(role="tool", content="ok", tool_call_id="c"),
    ]

    payload = client._prepare_payload(messages, "deepseek-chat", None)

    assert payload["messages"][1]["content"] is None
    assert payload["messages"][2] == {"role": "tool", "content": "ok", "tool_call_id": "c"}
    assert "tools" not in payload


def test_create_client_selects_provider_classes():
    assert isinstance(create_client("deepseek", "k", "deepseek-chat"), DeepSeekClient)
    router = create_client("OpenRouter", "k", "m", only=["A"], timeout=5.0)
    assert isinstance(router, OpenRouterClient)
    assert router.routing == {"only": ["A"]}
    assert router.timeout == 5.0
    generic = create_client("openai", "k", "m", base_url="http://localhost:8000/v1", only=["ignored"])
    assert type(generic) is OpenAICompatibleClient
    with pytest.raises(ValueError):
        create_client("openai", "k", "m")
    with pytest.raises(ValueError):
        create_client("nope", "k", "m")


def test_parse_provider_model_keeps_nested_model_paths():
    providers = {"openrouter": {}, "deepseek": {}}

    assert parse_provider_model("openrouter/anthropic/claude-sonnet-4", providers) == (
        "openrouter",
        "anthropic/claude-sonnet-4",
    )
    for bad in ("claude", "openrouter/", "/model", "azure/gpt"):
        with pytest.raises(ValueError):
            parse_provider_model(bad, providers)


def test_resolver_caches_one_client_per_provider():
    built = []

    def factory(kind, api_key, model, **kwargs):
        built.append((kind, api_key, model, kwargs))
        return object()

    resolver = ProviderResolver(
        {"openrouter": {"kind": "openrouter", "base_url": "https://openrouter.ai/api/v1", "only": ["A"]}},
        api_key_lookup=lambda provider: f"{provider}-key",
        max_retries=5,
        client_factory=factory,
    )

    first = resolver.resolve("openrouter/anthropic/claude-sonnet-4")
    second = resolver.resolve("openrouter/openai/gpt-4o")

    assert first.client is second.client
    assert second.model == "openai/gpt-4o"
    assert second.identifier == "openrouter/openai/gpt-4o"
    assert len(built) == 1
    kind, api_key, _, kwargs = built[0]
    assert (kind, api_key) == ("openrouter", "openrouter-key")
    assert kwargs["only"] == ["A"]
    assert kwargs["retry_config"].max_retries == 5
