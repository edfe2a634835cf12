"""
Execution plan data structures.

An ExecutionPlan is one concrete run of a graph:
- the immutable GraphModel it runs
- the ExecutionConfig it runs under
- one NodeExecutionState per node, in topological order
- the outputs produced so far, keyed by node id

Per-node status machine:

    pending -> running -> success | failed | skipped
    pending -> skipped

Only the engine's driver mutates a plan. Once the run is terminal the plan
is frozen and rejects further node transitions.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationInfo, model_validator

from nodeflow.graph.edge import GraphModel
from nodeflow.graph.node import NodeOutput
from nodeflow.graph.retry import RetryPolicy

if TYPE_CHECKING:
    from nodeflow.graph.validator import ValidationResult

# Lower bounds of the user-facing configuration surface (CLI, config file)
MIN_TIMEOUT_MS = 1000
MIN_RETRY_DELAY_MS = 100


class ExecutionMode(StrEnum):
    """Scheduling policy for a run."""

    SEQUENTIAL = "sequential"  # Topological order, one at a time, halt on failure
    PARALLEL = "parallel"  # Ready-set, up to max_concurrency at once
    CONDITIONAL = "conditional"  # Parallel, plus per-node predicates


class NodeStatus(StrEnum):
    """Status of a node within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED)


class ExecutionStatus(StrEnum):
    """Overall status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class InvalidStateTransition(RuntimeError):
    """A node status change that the status machine does not allow."""


class PlanFrozenError(RuntimeError):
    """Mutation attempted on a plan that already reached a terminal state."""


class ExecutionError(Exception):
    """A finished run that did not complete. Carries the plan."""

    def __init__(self, message: str, plan: "ExecutionPlan"):
        super().__init__(message)
        self.plan = plan


class ExecutionFailedError(ExecutionError):
    """At least one node failed, or the graph never passed validation."""


class ExecutionTimeoutError(ExecutionError, TimeoutError):
    """The run-level deadline elapsed before the run finished."""


class ExecutionCancelledError(ExecutionError):
    """The run was cancelled through the engine."""


class ExecutionConfig(BaseModel):
    """
    Run configuration.

    ``mode=None`` lets the engine pick a mode from the graph. ``timeout`` is
    the run-level deadline in milliseconds.

    Programmatic construction only requires positive values; use
    ``from_options`` for user-supplied settings, which also enforces the
    surface minimums (timeout >= 1000ms, retry delay >= 100ms).
    """

    mode: ExecutionMode | None = None
    max_concurrency: int = Field(default=5, ge=1, alias="maxConcurrency")
    timeout: float = Field(default=300_000, gt=0, description="Run deadline in milliseconds")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy, alias="retryPolicy")

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def _check_surface_bounds(self, info: ValidationInfo) -> "ExecutionConfig":
        if not (info.context or {}).get("surface"):
            return self
        if self.timeout < MIN_TIMEOUT_MS:
            raise ValueError(f"timeout must be at least {MIN_TIMEOUT_MS}ms")
        if self.retry_policy.retry_delay < MIN_RETRY_DELAY_MS:
            raise ValueError(f"retry_delay must be at least {MIN_RETRY_DELAY_MS}ms")
        return self

    @classmethod
    def from_options(cls, **options: Any) -> "ExecutionConfig":
        """
        Build a config from user-facing options (snake_case or camelCase).

        None values are dropped so callers can pass unset CLI flags through.

        Raises:
            pydantic.ValidationError: on out-of-range values
        """
        cleaned = {key: value for key, value in options.items() if value is not None}
        return cls.model_validate(cleaned, context={"surface": True})


@dataclass
class NodeExecutionState:
    """Live state of one node in one run."""

    node_id: str
    node_type: str
    label: str
    status: NodeStatus = NodeStatus.PENDING
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    skip_reason: str | None = None
    _clock: float | None = field(default=None, repr=False)

    def _require(self, *allowed: NodeStatus, target: NodeStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransition(
                f"Node '{self.node_id}': cannot go from {self.status} to {target}"
            )

    def _finish(self, status: NodeStatus) -> None:
        self.status = status
        self.finished_at = datetime.now(UTC)
        if self._clock is not None:
            self.duration_ms = (time.monotonic() - self._clock) * 1000

    def start(self) -> None:
        self._require(NodeStatus.PENDING, target=NodeStatus.RUNNING)
        self.status = NodeStatus.RUNNING
        self.started_at = datetime.now(UTC)
        self._clock = time.monotonic()

    def succeed(self, outputs: dict[str, Any]) -> None:
        self._require(NodeStatus.RUNNING, target=NodeStatus.SUCCESS)
        self.outputs = dict(outputs)
        self._finish(NodeStatus.SUCCESS)

    def fail(self, error: str) -> None:
        self._require(NodeStatus.RUNNING, target=NodeStatus.FAILED)
        self.error = error
        self._finish(NodeStatus.FAILED)

    def skip(self, reason: str) -> None:
        self._require(NodeStatus.PENDING, NodeStatus.RUNNING, target=NodeStatus.SKIPPED)
        self.skip_reason = reason
        self._finish(NodeStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "label": self.label,
            "status": str(self.status),
            "outputs": self.outputs,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "skip_reason": self.skip_reason,
        }


@dataclass
class ExecutionPlan:
    """One run of a graph, with live per-node state."""

    id: str
    graph: GraphModel
    config: ExecutionConfig
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    nodes: dict[str, NodeExecutionState] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    outputs: dict[str, NodeOutput] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    validation: "ValidationResult | None" = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    total_duration_ms: float | None = None
    frozen: bool = False

    @classmethod
    def for_graph(
        cls,
        execution_id: str,
        graph: GraphModel,
        config: ExecutionConfig,
        mode: ExecutionMode,
    ) -> "ExecutionPlan":
        """Create a pending plan with one state per node in topological order."""
        plan = cls(id=execution_id, graph=graph, config=config, mode=mode)
        order = graph.topological_order()
        # Nodes on a cycle are not in the order; keep them so nothing is lost
        placed = set(order)
        order += [n.id for n in graph.nodes if n.id not in placed]
        for node_id in order:
            node = graph.get_node(node_id)
            plan.nodes[node_id] = NodeExecutionState(
                node_id=node.id, node_type=node.type, label=node.label
            )
        return plan

    @property
    def workflow_id(self) -> str:
        return self.graph.id

    @property
    def node_states(self) -> list[NodeExecutionState]:
        return list(self.nodes.values())

    def _count(self, status: NodeStatus) -> int:
        return sum(1 for state in self.nodes.values() if state.status == status)

    @property
    def completed_nodes(self) -> int:
        return self._count(NodeStatus.SUCCESS)

    @property
    def failed_nodes(self) -> int:
        return self._count(NodeStatus.FAILED)

    @property
    def skipped_nodes(self) -> int:
        return self._count(NodeStatus.SKIPPED)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def _state(self, node_id: str) -> NodeExecutionState:
        if self.frozen:
            raise PlanFrozenError(f"Execution {self.id} is finished; node '{node_id}' is read-only")
        return self.nodes[node_id]

    def mark_running(self, node_id: str) -> None:
        self._state(node_id).start()

    def mark_success(self, node_id: str, output: NodeOutput) -> None:
        state = self._state(node_id)
        state.succeed({"output": output.output, "data": output.data})
        self.outputs[node_id] = output

    def mark_failed(self, node_id: str, error: str) -> None:
        self._state(node_id).fail(error)
        self.errors[node_id] = error

    def mark_skipped(self, node_id: str, reason: str) -> None:
        self._state(node_id).skip(reason)

    def start(self) -> None:
        self.status = ExecutionStatus.RUNNING
        self.started_at = datetime.now(UTC)

    def finish(self, status: ExecutionStatus) -> None:
        """Set the terminal status, stamp timings and freeze the plan."""
        self.status = status
        self.finished_at = datetime.now(UTC)
        if self.started_at is not None:
            self.total_duration_ms = (self.finished_at - self.started_at).total_seconds() * 1000
        self.freeze()

    def freeze(self) -> None:
        if not self.status.is_terminal():
            raise InvalidStateTransition(f"Execution {self.id} is still {self.status}")
        self.frozen = True

    def raise_for_status(self) -> "ExecutionPlan":
        """
        Raise if the run did not complete; return the plan otherwise.

        Raises:
            ExecutionTimeoutError: run hit its deadline
            ExecutionCancelledError: run was cancelled
            ExecutionFailedError: any other non-completed terminal status
        """
        if self.status == ExecutionStatus.COMPLETED:
            return self
        if self.status == ExecutionStatus.TIMED_OUT:
            raise ExecutionTimeoutError(self.errors.get("timeout", "Execution timed out"), self)
        if self.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(self.errors.get("cancelled", "Execution cancelled"), self)
        reason = "; ".join(f"{key}: {msg}" for key, msg in self.errors.items())
        raise ExecutionFailedError(
            f"Execution {self.id} {self.status}" + (f" ({reason})" if reason else ""), self
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "mode": str(self.mode),
            "status": str(self.status),
            "config": self.config.model_dump(mode="json"),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_duration_ms": self.total_duration_ms,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "skipped_nodes": self.skipped_nodes,
            "nodes": [state.to_dict() for state in self.nodes.values()],
            "outputs": {node_id: out.to_dict() for node_id, out in self.outputs.items()},
            "errors": dict(self.errors),
            "validation": self.validation.to_dict() if self.validation else None,
        }
