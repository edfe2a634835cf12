"""
Tests for the synchronous EventBus.
"""

import asyncio
import logging

import pytest

from nodeflow.runtime import EventBus, EventType, ExecutionEvent


def _event(event_type=EventType.NODE_START, execution_id="exec_1", **data):
    return ExecutionEvent(type=event_type, execution_id=execution_id, data=data)


def test_handlers_called_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.NODE_START, lambda e: calls.append("first"))
    bus.subscribe(EventType.NODE_START, lambda e: calls.append("second"))
    bus.subscribe(EventType.NODE_COMPLETE, lambda e: calls.append("other"))

    bus.publish(_event())

    assert calls == ["first", "second"]


def test_subscribe_to_several_or_all_types():
    bus = EventBus()
    some, every = [], []
    bus.subscribe([EventType.NODE_START, EventType.NODE_COMPLETE], some.append)
    bus.subscribe(None, every.append)

    bus.publish(_event(EventType.NODE_START))
    bus.publish(_event(EventType.NODE_RETRY))
    bus.publish(_event(EventType.NODE_COMPLETE))

    assert [e.type for e in some] == [EventType.NODE_START, EventType.NODE_COMPLETE]
    assert len(every) == 3


def test_string_event_type_is_accepted():
    bus = EventBus()
    received = []
    bus.subscribe("node:start", received.append)
    bus.publish(_event(EventType.NODE_START))
    assert len(received) == 1


def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(EventType.NODE_START, received.append)

    bus.publish(_event())
    assert unsubscribe() is True
    assert unsubscribe() is False
    bus.publish(_event())

    assert len(received) == 1


def test_failing_handler_is_isolated(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise ValueError("handler bug")

    bus.subscribe(EventType.NODE_START, broken)
    bus.subscribe(EventType.NODE_START, received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(_event())

    assert len(received) == 1
    assert "handler bug" in caplog.text


def test_subscribe_and_unsubscribe_during_publish():
    bus = EventBus()
    calls = []
    holder = {}

    def first(event):
        calls.append("first")
        # Neither change affects the publish already in progress
        holder["unsub_second"]()
        bus.subscribe(EventType.NODE_START, lambda e: calls.append("late"))

    bus.subscribe(EventType.NODE_START, first)
    holder["unsub_second"] = bus.subscribe(
        EventType.NODE_START, lambda e: calls.append("second")
    )

    bus.publish(_event())
    assert calls == ["first", "second"]

    calls.clear()
    bus.publish(_event())
    assert calls == ["first", "late"]


def test_execution_filter():
    bus = EventBus()
    received = []
    bus.subscribe_to_execution("exec_a", received.append)

    bus.publish(_event(execution_id="exec_a"))
    bus.publish(_event(execution_id="exec_b"))
    bus.publish(_event(EventType.NODE_COMPLETE, execution_id="exec_a"))

    assert [e.execution_id for e in received] == ["exec_a", "exec_a"]


def test_active_execution_tracking():
    bus = EventBus()
    bus.emit_execution_start("exec_1", "wf", total_nodes=3, mode="parallel")
    assert bus.is_execution_active("exec_1")
    assert bus.get_active_executions() == ["exec_1"]

    bus.emit_execution_complete(
        "exec_1",
        status="completed",
        completed_nodes=3,
        failed_nodes=0,
        skipped_nodes=0,
        total_duration_ms=12.5,
    )
    assert not bus.is_execution_active("exec_1")


def test_history_filters_and_limit():
    bus = EventBus(max_history=5)
    for i in range(4):
        bus.emit_node_start("exec_1", f"n{i}", f"Node {i}")
    bus.emit_node_start("exec_2", "x", "X")
    bus.emit_execution_error("exec_1", "boom", stage="node", node_id="n3")

    # Oldest event was evicted
    assert len(bus.get_history()) == 5
    assert [e.node_id for e in bus.get_history(execution_id="exec_1")] == ["n1", "n2", "n3", "n3"]
    assert len(bus.get_history(event_type=EventType.EXECUTION_ERROR)) == 1
    assert [e.node_id for e in bus.get_history(limit=2)] == ["x", "n3"]


def test_stats_and_clear():
    bus = EventBus()
    bus.subscribe(None, lambda e: None)
    bus.emit_node_start("exec_1", "n1", "N1")
    bus.emit_node_progress("exec_1", "n1", "N1", 50, message="halfway")
    bus.emit_node_progress("exec_1", "n1", "N1", 100)

    stats = bus.get_stats()
    assert stats["total_events"] == 3
    assert stats["subscriptions"] == 1
    assert stats["events_by_type"] == {"node:start": 1, "node:progress": 2}

    bus.clear_history()
    assert bus.get_stats()["total_events"] == 0
    assert bus.get_stats()["subscriptions"] == 1

    bus.clear()
    assert bus.get_stats()["subscriptions"] == 0


def test_emitter_payloads():
    bus = EventBus()
    events = []
    bus.subscribe(None, events.append)

    bus.emit_node_complete("e", "n", "N", status="failed", duration_ms=3.0, error="bad")
    bus.emit_node_retry("e", "n", "N", attempt=1, max_attempts=3, delay_ms=100, error="bad")

    complete, retry = events
    assert complete.data == {"status": "failed", "duration_ms": 3.0, "error": "bad"}
    assert complete.node_label == "N"
    assert retry.data["attempt"] == 1
    assert retry.data["delay_ms"] == 100

    serialized = complete.to_dict()
    assert serialized["type"] == "node:complete"
    assert serialized["timestamp"].endswith("+00:00")


@pytest.mark.asyncio
async def test_wait_for_event():
    bus = EventBus()

    async def publish_later():
        await asyncio.sleep(0.01)
        bus.emit_node_start("exec_2", "other", "Other")
        bus.emit_node_start("exec_1", "n1", "N1")

    task = asyncio.create_task(publish_later())
    event = await bus.wait_for(EventType.NODE_START, execution_id="exec_1", timeout=1)
    await task

    assert event is not None
    assert event.node_id == "n1"
    assert bus.get_stats()["subscriptions"] == 0


@pytest.mark.asyncio
async def test_wait_for_times_out():
    bus = EventBus()
    assert await bus.wait_for(EventType.EXECUTION_COMPLETE, timeout=0.01) is None
