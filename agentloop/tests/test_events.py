"""Tests for the event bus."""

import pytest

from agentloop.decomposition import DecompositionRequest, DecompositionSubtask
from agentloop.events import (
    AGENT_OUTPUT,
    ITERATION_START,
    AgentCompleteEvent,
    AgentOutputEvent,
    EventBus,
    IterationStartEvent,
)


class TestEventBus:
    """Tests for EventBus."""

    def test_handlers_called_in_subscription_order(self):
        bus = EventBus()
        calls = []
        bus.on(ITERATION_START, lambda e: calls.append(("first", e.iteration)))
        bus.on(ITERATION_START, lambda e: calls.append(("second", e.iteration)))

        bus.emit(ITERATION_START, IterationStartEvent(iteration=2, total_iterations=5))

        assert calls == [("first", 2), ("second", 2)]

    def test_unsubscribe(self):
        bus = EventBus()
        calls = []
        unsubscribe = bus.on(AGENT_OUTPUT, lambda e: calls.append(e.text))

        unsubscribe()
        bus.emit(AGENT_OUTPUT, AgentOutputEvent(text="hi"))

        assert calls == []
        assert bus.listener_count(AGENT_OUTPUT) == 0

    def test_off_unknown_handler_is_noop(self):
        bus = EventBus()

        bus.off(AGENT_OUTPUT, print)

    def test_same_handler_subscribed_once(self):
        bus = EventBus()
        calls = []

        def handler(event):
            calls.append(event)

        bus.on(AGENT_OUTPUT, handler)
        bus.on(AGENT_OUTPUT, handler)
        bus.emit(AGENT_OUTPUT, AgentOutputEvent(text="x"))

        assert len(calls) == 1

    def test_handler_exception_propagates(self):
        bus = EventBus()

        def failing(event):
            raise ValueError("boom")

        bus.on(AGENT_OUTPUT, failing)

        with pytest.raises(ValueError, match="boom"):
            bus.emit(AGENT_OUTPUT, AgentOutputEvent(text="x"))

    def test_emit_without_listeners(self):
        EventBus().emit(ITERATION_START, IterationStartEvent(iteration=1, total_iterations=1))

    def test_listener_counts(self):
        bus = EventBus()
        bus.on(AGENT_OUTPUT, print)
        bus.on(ITERATION_START, print)
        bus.on(ITERATION_START, repr)

        assert bus.listener_count() == 3
        assert bus.listener_stats() == {AGENT_OUTPUT: 1, ITERATION_START: 2}

        bus.remove_all_listeners(ITERATION_START)
        assert bus.listener_count() == 1

        bus.remove_all_listeners()
        assert bus.listener_count() == 0


class TestEventPayloads:
    """Tests for event dataclasses."""

    def test_decomposition_request_flag(self):
        event = AgentCompleteEvent(
            is_complete=False, exit_code=0, output_length=10, output_preview="", retry_count=0
        )
        assert not event.has_decomposition_request

        event.decomposition_request = DecompositionRequest(
            original_task_title="Big",
            reason="too big",
            suggested_subtasks=[DecompositionSubtask(title="a", description="", steps=[])],
        )
        assert event.has_decomposition_request
