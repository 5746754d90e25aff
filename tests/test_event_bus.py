import pytest

from ai_project_agent.session import EventBus, LoadingChanged, MessageAdded, SessionCreated
from ai_project_agent.providers.llm.base import Message


def test_listeners_run_in_registration_order():
    bus = EventBus()
    calls = []
    bus.on("loadingChanged", lambda event: calls.append(("first", event.is_loading)))
    bus.on(LoadingChanged, lambda event: calls.append(("second", event.is_loading)))

    bus.emit(LoadingChanged(project_id="p", is_loading=True))

    assert calls == [("first", True), ("second", True)]


def test_registering_twice_delivers_once():
    bus = EventBus()
    received = []
    bus.on("sessionCreated", received.append)
    bus.on(SessionCreated, received.append)

    bus.emit(SessionCreated(project_id="p"))

    assert len(received) == 1
    assert bus.listener_count("sessionCreated") == 1


def test_failing_listener_is_isolated(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.on("messageAdded", broken)
    bus.on("messageAdded", received.append)

    bus.emit(MessageAdded(project_id="p", message=Message(role="user", content="hi"), index=0))

    assert len(received) == 1
    assert "Listener" in caplog.text


def test_unsubscribe_via_returned_callable_and_off():
    bus = EventBus()
    received = []
    unsubscribe = bus.on("loadingChanged", received.append)
    bus.on("sessionCreated", received.append)

    unsubscribe()
    assert bus.off("sessionCreated", received.append) is True
    assert bus.off("sessionCreated", received.append) is False

    bus.emit(LoadingChanged(project_id="p", is_loading=True))
    bus.emit(SessionCreated(project_id="p"))
    assert received == []


def test_listener_may_unsubscribe_during_emit():
    bus = EventBus()
    calls = []

    def once(event):
        calls.append("once")
        bus.off("loadingChanged", once)

    bus.on("loadingChanged", once)
    bus.on("loadingChanged", lambda event: calls.append("always"))

    bus.emit(LoadingChanged(project_id="p", is_loading=True))
    bus.emit(LoadingChanged(project_id="p", is_loading=False))

    assert calls == ["once", "always", "always"]


def test_unknown_event_name_is_rejected():
    bus = EventBus()

    with pytest.raises(ValueError):
        bus.on("messageRemoved", lambda event: None)


def test_clear_drops_all_listeners():
    bus = EventBus()
    bus.on("loadingChanged", lambda event: None)
    bus.on("costUpdated", lambda event: None)

    bus.clear()

    assert bus.listener_count() == 0
