"""Tool-use generation loop: provider call, streaming, tool execution, repeat."""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.providers.llm.base import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMRetryExhaustedError,
    LLMTimeoutError,
    Message,
    TurnError,
)
from ai_project_agent.providers.llm.resolver import ResolvedModel
from ai_project_agent.session.models import PartialToolCall, Session
from ai_project_agent.session.recorder import SessionRecorder
from ai_project_agent.tools.registry import MalformedToolCallError

from .streaming import CompletedTurn, StreamAccumulator, StreamThrottle
from .tool_invoker import RegistryToolInvoker
from .types import GenerationResult, GenerationStatus, ToolOutcome

LOGGER = get_logger(__name__)

NETWORK_ERROR_MESSAGE = (
    "Network error: Unable to connect to AI service. "
    "Please check your internet connection and AI settings."
)
AUTHENTICATION_ERROR_MESSAGE = "Authentication error: Please check your API key in AI settings."
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment before trying again."
UNEXPECTED_ERROR_MESSAGE = "Sorry, I encountered an unexpected error. Please try again."
CANCELLED_TOOL_MESSAGE = "Tool call cancelled before execution."
SKIPPED_TOOL_MESSAGE = "Tool call skipped because an earlier tool call in this turn failed."


class ModelResolver(Protocol):
    def resolve(self, identifier: str) -> ResolvedModel:
        ...


def budget_message(max_steps: int) -> str:
    noun = "step" if max_steps == 1 else "steps"
    return (
        f"I stopped after reaching the limit of {max_steps} {noun} for one response. "
        "Send another message to let me continue."
    )


def describe_provider_error(exc: BaseException, model: Optional[str]) -> TurnError:
    """Translate a provider failure into the user-facing error attached to a turn."""
    cause = exc
    if isinstance(exc, LLMRetryExhaustedError) and isinstance(exc.__cause__, LLMError):
        cause = exc.__cause__
    if isinstance(cause, LLMRateLimitError):
        return TurnError(kind="rate_limit", message=RATE_LIMIT_MESSAGE, model=model)
    if isinstance(cause, LLMAuthenticationError):
        return TurnError(kind="authentication", message=AUTHENTICATION_ERROR_MESSAGE, model=model)
    if isinstance(cause, (LLMConnectionError, LLMTimeoutError)):
        return TurnError(kind="network", message=NETWORK_ERROR_MESSAGE, model=model)
    if isinstance(exc, LLMError):
        return TurnError(kind="provider", message=f"AI service error: {exc}", model=model)
    return TurnError(kind="internal", message=UNEXPECTED_ERROR_MESSAGE, model=model, recoverable=True)


class GenerationLoop:
    """Run one generation for ``session`` until a terminal state.

    The loop owns the session for as long as ``cancellation`` is the session's
    active token. It never raises: provider, tool and programming errors all end
    in a terminal state recorded on the session.
    """

    def __init__(
        self,
        session: Session,
        recorder: SessionRecorder,
        resolver: ModelResolver,
        *,
        provider_model: str,
        cancellation: CancellationToken,
        generation: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.recorder = recorder
        self.resolver = resolver
        self.provider_model = provider_model
        self.cancellation = cancellation
        self.generation = generation
        self._clock = clock
        self.steps = 0
        self.provider_calls = 0
        self.messages_added = 0
        self._stop_reason: Optional[str] = None
        self._error: Optional[TurnError] = None

    @property
    def max_steps(self) -> int:
        return self.session.config.max_steps

    def run(self) -> GenerationResult:
        started = time.perf_counter()
        status: GenerationStatus = "failed"
        LOGGER.info(
            "Generation %d started for project %s with %s",
            self.generation,
            self.session.project_id,
            self.provider_model,
        )
        try:
            status = self._run_steps()
        except Exception as exc:  # noqa: BLE001 - the loop must never raise out of its thread
            LOGGER.exception("Generation %d for project %s crashed", self.generation, self.session.project_id)
            status = self._fail_with_message(describe_provider_error(exc, self.provider_model))
        finally:
            result = GenerationResult(
                project_id=self.session.project_id,
                generation=self.generation,
                status=status,
                provider_model=self.provider_model,
                steps=self.steps,
                provider_calls=self.provider_calls,
                messages_added=self.messages_added,
                stop_reason=self._stop_reason or (self.cancellation.reason if status == "cancelled" else None),
                runtime_seconds=time.perf_counter() - started,
                error=self._error.to_dict() if self._error else None,
            )
            self.recorder.detach(self.session, self.cancellation, result)
        LOGGER.info(
            "Generation %d for project %s finished: %s after %d step(s)",
            self.generation,
            self.session.project_id,
            status,
            self.steps,
        )
        return result

    # Steps -----------------------------------------------------------------

    def _run_steps(self) -> GenerationStatus:
        try:
            resolved = self.resolver.resolve(self.provider_model)
        except ValueError as exc:
            LOGGER.warning("Cannot resolve model %s: %s", self.provider_model, exc)
            return self._fail_with_message(
                TurnError(kind="provider", message=f"AI service error: {exc}", model=self.provider_model)
            )

        registry = self.session.config.tools
        definitions = registry.definitions() or None
        invoker = RegistryToolInvoker(registry, model=resolved.identifier)

        while True:
            if self.cancellation.cancelled:
                return "cancelled"
            if self.steps >= self.max_steps:
                self._stop_reason = f"step budget of {self.max_steps} exhausted"
                self._append(Message(role="assistant", content=budget_message(self.max_steps)))
                return "budget_exhausted"

            self.steps += 1
            try:
                turn = self._stream_turn(resolved, definitions)
            except LLMError as exc:
                if self.cancellation.cancelled:
                    return "cancelled"
                LOGGER.warning("Provider call failed for %s: %s", resolved.identifier, exc)
                return self._fail_with_message(describe_provider_error(exc, resolved.identifier))
            if turn is None:
                return "cancelled"

            if self.recorder.finalize_turn(self.session, turn.to_message(), owner=self.cancellation) is None:
                return "cancelled"
            self.messages_added += 1
            if turn.usage is not None:
                self.recorder.track_usage(
                    self.session, resolved.identifier, turn.usage, owner=self.cancellation
                )

            if not turn.tool_calls:
                self._stop_reason = turn.finish_reason or "stop"
                return "completed"

            status = self._run_tools(turn.tool_calls, invoker)
            if status is not None:
                return status

    def _stream_turn(
        self,
        resolved: ResolvedModel,
        definitions: Optional[List[Dict[str, Any]]],
    ) -> Optional[CompletedTurn]:
        """Stream one assistant turn; returns ``None`` when it was cancelled."""
        messages = self.session.compose()
        accumulator = StreamAccumulator()
        throttle = StreamThrottle(self.session.config.streaming_update_interval, self._clock)
        self.recorder.update_streaming(
            self.session, accumulator.snapshot(), owner=self.cancellation, emit=False
        )

        self.provider_calls += 1
        LOGGER.debug("Provider call %d with %d messages", self.provider_calls, len(messages))
        stream = resolved.client.stream_completion(
            messages,
            resolved.model,
            tools=definitions,
            cancellation=self.cancellation,
        )
        try:
            for event in stream:
                if self.cancellation.cancelled:
                    break
                if accumulator.add(event) and throttle.should_emit():
                    self.recorder.update_streaming(self.session, accumulator.snapshot(), owner=self.cancellation)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        if self.cancellation.cancelled:
            LOGGER.debug("Discarding partial turn for project %s", self.session.project_id)
            return None
        if throttle.flush():
            self.recorder.update_streaming(self.session, accumulator.snapshot(), owner=self.cancellation)
        return accumulator.complete()

    def _run_tools(
        self,
        calls: Sequence[PartialToolCall],
        invoker: RegistryToolInvoker,
    ) -> Optional[GenerationStatus]:
        """Execute ``calls`` in order; returns a terminal status or ``None`` to keep looping."""
        for position, call in enumerate(calls):
            if self.cancellation.cancelled:
                self._answer_remaining(calls[position:], CANCELLED_TOOL_MESSAGE, kind="cancelled")
                return "cancelled"

            try:
                outcome = invoker(call)
            except MalformedToolCallError as exc:
                error = TurnError(
                    kind="malformed_tool_call",
                    message=str(exc),
                    tool_call_id=exc.tool_call_id,
                    model=exc.model,
                )
                LOGGER.warning("Malformed tool call %s from %s: %s", exc.tool_call_id, exc.model, exc)
                self._append_tool_result(call, f"Error parsing arguments for tool {call.name}: {exc}", error)
                self._answer_remaining(calls[position + 1:], SKIPPED_TOOL_MESSAGE, kind="tool")
                return self._fail(error, reason="malformed tool call")

            error = self._outcome_error(outcome, call)
            self._append_tool_result(call, outcome.content, error)
            if outcome.fatal and error is not None:
                self._answer_remaining(calls[position + 1:], SKIPPED_TOOL_MESSAGE, kind="tool")
                return self._fail(error, reason=f"fatal failure in tool {call.name}")
        return None

    # Helpers ---------------------------------------------------------------

    def _outcome_error(self, outcome: ToolOutcome, call: PartialToolCall) -> Optional[TurnError]:
        if outcome.success:
            return None
        return TurnError(
            kind=outcome.error_kind or "tool",
            message=outcome.error_message or outcome.content,
            tool_call_id=call.id,
            model=self.provider_model,
            recoverable=not outcome.fatal,
        )

    def _answer_remaining(self, calls: Sequence[PartialToolCall], content: str, *, kind: str) -> None:
        for call in calls:
            error = TurnError(kind=kind, message=content, tool_call_id=call.id, model=self.provider_model)
            self._append_tool_result(call, content, error)

    def _append_tool_result(self, call: PartialToolCall, content: str, error: Optional[TurnError]) -> None:
        self._append(Message(role="tool", content=content, tool_call_id=call.id, error=error))

    def _append(self, message: Message) -> None:
        if self.recorder.append(self.session, message, owner=self.cancellation) is not None:
            self.messages_added += 1

    def _fail(self, error: TurnError, *, reason: str) -> GenerationStatus:
        self._error = error
        self._stop_reason = reason
        self.recorder.fail(self.session, error, owner=self.cancellation)
        return "failed"

    def _fail_with_message(self, error: TurnError) -> GenerationStatus:
        """Report ``error`` as an assistant turn so the conversation shows it."""
        if self.cancellation.cancelled:
            return "cancelled"
        self._append(Message(role="assistant", content=error.message, error=error))
        return self._fail(error, reason=error.kind)


__all__ = [
    "GenerationLoop",
    "ModelResolver",
    "budget_message",
    "describe_provider_error",
]
