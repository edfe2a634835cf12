"""Shared fixtures and graph builders."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from nodeflow.graph import EdgeSpec, ExecutionEngine, GraphModel, NodeSpec
from nodeflow.observability import clear_trace_context
from nodeflow.processors import register_builtin_processors
from nodeflow.runtime import EventBus, NodeTypeRegistry


def make_graph(
    nodes: list[tuple[str, str] | tuple[str, str, dict[str, Any]]],
    edges: list[tuple[str, str]],
    graph_id: str = "test-graph",
) -> GraphModel:
    """
    Build a graph from ``(id, type[, config])`` tuples and ``(source, target)`` pairs.

    Labels default to the node id.
    """
    specs = []
    for entry in nodes:
        node_id, node_type, *rest = entry
        specs.append(NodeSpec(id=node_id, type=node_type, config=rest[0] if rest else {}))
    return GraphModel(
        id=graph_id,
        nodes=specs,
        edges=[EdgeSpec(id=f"e{i}", source=s, target=t) for i, (s, t) in enumerate(edges)],
    )


class RecordingProcessor:
    """Returns ``{"output": <value>}`` and records every call."""

    supports_cancellation = True

    def __init__(self, value: Any = "ok", delay: float = 0.0):
        self.value = value
        self.delay = delay
        self.calls: list[tuple[dict, dict]] = []

    async def execute(self, config, upstream):
        self.calls.append((config, upstream))
        if self.delay:
            await asyncio.sleep(self.delay)
        return {"output": self.value}


class FailingProcessor:
    """Raises on every call (or on the first ``fail_times`` calls)."""

    supports_cancellation = True

    def __init__(self, message: str = "boom", fail_times: int | None = None):
        self.message = message
        self.fail_times = fail_times
        self.calls = 0

    async def execute(self, config, upstream):
        self.calls += 1
        if self.fail_times is None or self.calls <= self.fail_times:
            raise RuntimeError(self.message)
        return {"output": f"recovered after {self.calls - 1} failure(s)"}


@pytest.fixture(autouse=True)
def _reset_trace_context():
    yield
    clear_trace_context()


@pytest.fixture
def registry():
    registry = register_builtin_processors(NodeTypeRegistry())
    registry.register_type("work")
    return registry


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(registry, event_bus):
    return ExecutionEngine(registry=registry, event_bus=event_bus)


@pytest.fixture
def recorded_events(event_bus):
    """Every event published on the bus, in order."""
    events = []
    event_bus.subscribe(None, events.append)
    return events


@pytest.fixture
def linear_graph():
    return make_graph(
        [("in", "dataInput"), ("work", "work"), ("out", "dataOutput")],
        [("in", "work"), ("work", "out")],
    )


@pytest.fixture
def mock_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep
