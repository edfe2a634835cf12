"""
Graph layer: the workflow model, its validation, templates and execution.

Leaf modules load first; the validator and engine pull in the runtime package.
"""

# ruff: noqa: I001
from nodeflow.graph.node import (
    FunctionProcessor,
    NodeCondition,
    NodeOutput,
    NodeProcessor,
    NodeRole,
    NodeSpec,
    NodeType,
    ProcessorError,
    ProcessorNotFoundError,
)
from nodeflow.graph.edge import EdgeSpec, GraphModel
from nodeflow.graph.templates import (
    CompiledTemplate,
    VariableCheck,
    VariableResolver,
    extract_variables,
    find_label_references,
    has_variables,
    rename_label,
    validate_variables,
)
from nodeflow.graph.retry import RetryPolicy, delay_for, should_retry
from nodeflow.graph.plan import (
    ExecutionCancelledError,
    ExecutionConfig,
    ExecutionError,
    ExecutionFailedError,
    ExecutionMode,
    ExecutionPlan,
    ExecutionStatus,
    ExecutionTimeoutError,
    InvalidStateTransition,
    NodeExecutionState,
    NodeStatus,
    PlanFrozenError,
)
from nodeflow.graph.validator import (
    GraphValidator,
    ValidationIssue,
    ValidationResult,
    WorkflowValidationError,
    summary,
)
from nodeflow.graph.executor import ExecutionEngine

__all__ = [
    # Model
    "NodeType",
    "NodeRole",
    "NodeSpec",
    "NodeOutput",
    "NodeCondition",
    "EdgeSpec",
    "GraphModel",
    # Processors
    "NodeProcessor",
    "FunctionProcessor",
    "ProcessorError",
    "ProcessorNotFoundError",
    # Templates
    "CompiledTemplate",
    "VariableCheck",
    "VariableResolver",
    "extract_variables",
    "has_variables",
    "validate_variables",
    "find_label_references",
    "rename_label",
    # Retry
    "RetryPolicy",
    "should_retry",
    "delay_for",
    # Plan
    "ExecutionConfig",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionStatus",
    "NodeExecutionState",
    "NodeStatus",
    "InvalidStateTransition",
    "PlanFrozenError",
    "ExecutionError",
    "ExecutionFailedError",
    "ExecutionTimeoutError",
    "ExecutionCancelledError",
    # Validation
    "GraphValidator",
    "ValidationIssue",
    "ValidationResult",
    "WorkflowValidationError",
    "summary",
    # Engine
    "ExecutionEngine",
]
