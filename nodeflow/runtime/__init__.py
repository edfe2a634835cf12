"""Runtime services shared by every run: the event bus and the node-type registry."""

from nodeflow.runtime.event_bus import EventBus, EventType, ExecutionEvent
from nodeflow.runtime.node_registry import NodeTypeDiagnostic, NodeTypeRegistry, SupportStatus

__all__ = [
    "EventBus",
    "EventType",
    "ExecutionEvent",
    "NodeTypeRegistry",
    "NodeTypeDiagnostic",
    "SupportStatus",
]
