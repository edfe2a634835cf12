"""
nodeflow - workflow execution core.

Validates node/edge graphs, resolves ``{{node.property}}`` templates between
nodes, and runs graphs sequentially, in parallel or conditionally with
retries, a run-level timeout and progress events.
"""

# The graph package must load before runtime (the registry imports node types)
from nodeflow.graph import (  # noqa: I001
    EdgeSpec,
    ExecutionConfig,
    ExecutionEngine,
    ExecutionMode,
    ExecutionPlan,
    ExecutionStatus,
    GraphModel,
    GraphValidator,
    NodeOutput,
    NodeSpec,
    NodeStatus,
    NodeType,
    ProcessorError,
    RetryPolicy,
    ValidationResult,
    VariableResolver,
)
from nodeflow.runtime import EventBus, EventType, ExecutionEvent, NodeTypeRegistry
from nodeflow.processors import register_builtin_processors

__version__ = "0.1.0"

__all__ = [
    "EdgeSpec",
    "EventBus",
    "EventType",
    "ExecutionConfig",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionStatus",
    "GraphModel",
    "GraphValidator",
    "NodeOutput",
    "NodeSpec",
    "NodeStatus",
    "NodeType",
    "NodeTypeRegistry",
    "ProcessorError",
    "RetryPolicy",
    "ValidationResult",
    "VariableResolver",
    "register_builtin_processors",
]
