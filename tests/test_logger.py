import json
import logging

from ai_project_agent.core.utils.logger import (
    CorrelationIdFilter,
    StructuredFormatter,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("ai_project_agent.test", logging.INFO, __file__, 1, message, (), None)


def test_correlation_scope_is_restored():
    set_correlation_id(None)
    assert get_correlation_id() == "-"

    with correlation_scope("demo:1"):
        assert get_correlation_id() == "demo:1"
        with correlation_scope("demo:2"):
            assert get_correlation_id() == "demo:2"
        assert get_correlation_id() == "demo:1"

    assert get_correlation_id() == "-"


def test_structured_formatter_includes_correlation_id():
    record = _record("generation started")
    with correlation_scope("demo:3"):
        CorrelationIdFilter().filter(record)

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "generation started"
    assert payload["correlation_id"] == "demo:3"
    assert payload["level"] == "INFO"
