import pytest

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.cost_tracker import TokenUsage
from ai_project_agent.engine.react.loop import (
    NETWORK_ERROR_MESSAGE,
    RATE_LIMIT_MESSAGE,
    UNEXPECTED_ERROR_MESSAGE,
    GenerationLoop,
    budget_message,
    describe_provider_error,
)
from ai_project_agent.engine.react.streaming import StreamAccumulator, StreamThrottle
from ai_project_agent.engine.react.tool_invoker import RegistryToolInvoker
from ai_project_agent.providers.llm.base import (
    LLMRateLimitError,
    LLMResponseError,
    LLMRetryExhaustedError,
    LLMTimeoutError,
    Message,
    StreamFinish,
    TextDelta,
    ToolCallDelta,
)
from ai_project_agent.session import EventBus, Session, SessionRecorder
from ai_project_agent.session.models import PartialToolCall
from ai_project_agent.tools.registry import MalformedToolCallError, ToolSpec

from fakes import FakeResolver, ScriptedClient, config, make_tools, read_file_tool, text_reply, tool_reply


def _loop(session, client, *, token=None, clock=None):
    token = token or CancellationToken()
    with session.lock:
        session.is_loading = True
        session.cancellation = token
    recorder = SessionRecorder(EventBus())
    kwargs = {"clock": clock} if clock is not None else {}
    return GenerationLoop(
        session,
        recorder,
        FakeResolver(client),
        provider_model="prov/model",
        cancellation=token,
        **kwargs,
    )


def test_accumulator_merges_fragments_by_index():
    accumulator = StreamAccumulator()
    events = [
        TextDelta("Let me "),
        TextDelta("check."),
        ToolCallDelta(index=1, id="call_b", name="list_files", arguments=""),
        ToolCallDelta(index=0, id="call_a", name="read_file", arguments='{"pa'),
        ToolCallDelta(index=0, arguments='th": "a"}'),
        StreamFinish("tool_calls", TokenUsage(prompt_tokens=3, completion_tokens=4)),
    ]
    changed = [accumulator.add(event) for event in events]

    turn = accumulator.complete()

    assert changed == [True, True, True, True, True, False]
    assert turn.content == "Let me check."
    assert [(call.id, call.name, call.arguments) for call in turn.tool_calls] == [
        ("call_a", "read_file", '{"path": "a"}'),
        ("call_b", "list_files", ""),
    ]
    assert turn.finish_reason == "tool_calls"
    assert turn.usage.total_tokens == 7


def test_accumulator_generates_missing_call_ids():
    accumulator = StreamAccumulator()
    accumulator.add(ToolCallDelta(index=0, name="read_file", arguments="{}"))

    call = accumulator.complete().tool_calls[0]

    assert call.id.startswith("call_0_")


def test_completed_turn_with_only_tool_calls_has_no_content():
    accumulator = StreamAccumulator()
    accumulator.add(ToolCallDelta(index=0, id="call_1", name="read_file", arguments="{}"))

    message = accumulator.complete().to_message()

    assert message.content is None
    assert message.tool_calls == [
        {"id": "call_1", "type": "function", "function": {"name": "read_file", "arguments": "{}"}}
    ]


def test_throttle_coalesces_within_interval():
    now = [0.0]
    throttle = StreamThrottle(0.05, clock=lambda: now[0])

    assert throttle.should_emit() is True
    now[0] = 0.01
    assert throttle.should_emit() is False
    now[0] = 0.02
    assert throttle.should_emit() is False
    assert throttle.flush() is True
    assert throttle.flush() is False
    now[0] = 0.08
    assert throttle.should_emit() is True


def test_throttle_with_zero_interval_emits_everything():
    throttle = StreamThrottle(0)

    assert all(throttle.should_emit() for _ in range(5))
    assert throttle.flush() is False


def test_invoker_parses_arguments():
    invoker = RegistryToolInvoker(make_tools(read_file_tool({"a": "A"})), model="prov/model")

    outcome = invoker(PartialToolCall(index=0, id="call_1", name="read_file", arguments='{"path": "a"}'))

    assert outcome.success is True
    assert outcome.content == "A"
    assert outcome.call_id == "call_1"


def test_invoker_treats_empty_arguments_as_empty_object():
    seen = []
    registry = make_tools(ToolSpec(name="ping", handler=lambda payload: seen.append(payload) or "pong"))

    outcome = RegistryToolInvoker(registry, model="m")(PartialToolCall(index=0, id="c", name="ping"))

    assert outcome.content == "pong"
    assert seen == [{}]


def test_invoker_raises_for_truncated_json():
    invoker = RegistryToolInvoker(make_tools(read_file_tool({})), model="prov/model")

    with pytest.raises(MalformedToolCallError) as excinfo:
        invoker(PartialToolCall(index=0, id="call_9", name="read_file", arguments='{"path": '))

    assert excinfo.value.tool_call_id == "call_9"
    assert excinfo.value.model == "prov/model"
    assert excinfo.value.tool_name == "read_file"


def test_invoker_reports_non_object_arguments():
    invoker = RegistryToolInvoker(make_tools(read_file_tool({})), model="m")

    outcome = invoker(PartialToolCall(index=0, id="c", name="read_file", arguments="[1, 2]"))

    assert outcome.success is False
    assert outcome.error_kind == "malformed_tool_call"
    assert "expected a JSON object" in outcome.content


def test_budget_message_names_the_limit():
    assert "limit of 1 step " in budget_message(1)
    assert "limit of 50 steps" in budget_message(50)


@pytest.mark.parametrize(
    "error, kind, message",
    [
        (LLMRateLimitError("429"), "rate_limit", RATE_LIMIT_MESSAGE),
        (LLMTimeoutError("slow"), "network", NETWORK_ERROR_MESSAGE),
        (ValueError("bug"), "internal", UNEXPECTED_ERROR_MESSAGE),
    ],
)
def test_describe_provider_error(error, kind, message):
    described = describe_provider_error(error, "prov/model")

    assert (described.kind, described.message, described.model) == (kind, message, "prov/model")


def test_describe_provider_error_uses_cause_of_exhausted_retries():
    try:
        try:
            raise LLMRateLimitError("429")
        except LLMRateLimitError as cause:
            raise LLMRetryExhaustedError("gave up") from cause
    except LLMRetryExhaustedError as exc:
        described = describe_provider_error(exc, None)

    assert described.kind == "rate_limit"


def test_loop_result_reports_steps_and_calls():
    session = Session(config=config(tools=make_tools(read_file_tool({"a": "A"}))))
    session.messages.append(Message(role="user", content="read a"))
    client = ScriptedClient(
        tool_reply(("call_1", "read_file", '{"path": "a"}')),
        text_reply("done"),
    )

    result = _loop(session, client).run()

    assert result.status == "completed"
    assert result.succeeded
    assert result.steps == 2
    assert result.provider_calls == 2
    assert result.messages_added == 3
    assert result.stop_reason == "stop"
    assert result.error is None
    assert session.last_result is result
    assert session.is_loading is False
    assert session.settled.is_set()


def test_loop_records_provider_failure_on_result():
    session = Session(config=config())
    session.messages.append(Message(role="user", content="hi"))

    result = _loop(session, ScriptedClient(LLMResponseError("bad gateway"))).run()

    assert result.status == "failed"
    assert result.error["kind"] == "provider"
    assert session.messages[-1].content == "AI service error: bad gateway"


def test_loop_throttles_streaming_updates():
    session = Session(config=config(streaming_update_interval=10.0))
    session.messages.append(Message(role="user", content="hi"))
    recorder_events = []
    loop = _loop(session, ScriptedClient(text_reply("abcdef", chunks=6)), clock=lambda: 0.0)
    loop.recorder.bus.on("streamingUpdate", recorder_events.append)

    loop.run()

    contents = [event.content for event in recorder_events]
    assert contents == ["a", "abcdef", ""]


def test_loop_does_nothing_when_cancelled_before_start():
    session = Session(config=config())
    session.messages.append(Message(role="user", content="hi"))
    token = CancellationToken()
    token.cancel("early")
    client = ScriptedClient(text_reply("unused"))

    result = _loop(session, client, token=token).run()

    assert result.status == "cancelled"
    assert result.stop_reason == "early"
    assert client.call_count == 0
    assert [m.role for m in session.messages] == ["user"]


def test_writes_from_a_detached_generation_are_dropped():
    session = Session(config=config())
    session.messages.append(Message(role="user", content="hi"))
    loop = _loop(session, ScriptedClient(text_reply("late reply")))
    with session.lock:
        SessionRecorder.detach_locked(session)

    loop.run()

    assert [m.role for m in session.messages] == ["user"]
