"""
Tests for ExecutionConfig, the node status machine and plan bookkeeping.
"""

import pytest
from pydantic import ValidationError

from conftest import make_graph
from nodeflow.graph import (
    ExecutionCancelledError,
    ExecutionConfig,
    ExecutionFailedError,
    ExecutionMode,
    ExecutionPlan,
    ExecutionStatus,
    InvalidStateTransition,
    NodeExecutionState,
    NodeOutput,
    NodeStatus,
    PlanFrozenError,
)


def _plan():
    graph = make_graph(
        [("out", "dataOutput"), ("work", "work"), ("in", "dataInput")],
        [("in", "work"), ("work", "out")],
    )
    return ExecutionPlan.for_graph("exec_1", graph, ExecutionConfig(), ExecutionMode.SEQUENTIAL)


# === ExecutionConfig ===


def test_config_defaults():
    config = ExecutionConfig()
    assert config.mode is None
    assert config.max_concurrency == 5
    assert config.timeout == 300_000
    assert config.retry_policy.max_retries == 3


def test_from_options_accepts_camel_case_and_drops_none():
    config = ExecutionConfig.from_options(
        mode="parallel",
        maxConcurrency=3,
        timeout=None,
        retryPolicy={"maxRetries": 1, "retryDelay": 200},
    )
    assert config.mode == ExecutionMode.PARALLEL
    assert config.max_concurrency == 3
    assert config.timeout == 300_000
    assert config.retry_policy.retry_delay == 200


@pytest.mark.parametrize(
    "options",
    [
        {"timeout": 500},
        {"retry_policy": {"retry_delay": 50}},
        {"max_concurrency": 0},
        {"mode": "eventually"},
    ],
)
def test_from_options_enforces_surface_minimums(options):
    with pytest.raises(ValidationError):
        ExecutionConfig.from_options(**options)


def test_programmatic_config_allows_short_timeouts():
    config = ExecutionConfig(timeout=100)
    assert config.timeout == 100
    with pytest.raises(ValidationError):
        ExecutionConfig(timeout=0)


# === NodeExecutionState ===


def test_state_machine_happy_path():
    state = NodeExecutionState(node_id="n", node_type="work", label="N")
    state.start()
    assert state.status == NodeStatus.RUNNING
    assert state.started_at is not None

    state.succeed({"output": 1})
    assert state.status == NodeStatus.SUCCESS
    assert state.outputs == {"output": 1}
    assert state.duration_ms is not None
    assert state.status.is_terminal()


def test_pending_can_be_skipped():
    state = NodeExecutionState(node_id="n", node_type="work", label="N")
    state.skip("Dependency failed: x")
    assert state.status == NodeStatus.SKIPPED
    assert state.skip_reason == "Dependency failed: x"
    assert state.duration_ms is None


@pytest.mark.parametrize(
    "setup,transition",
    [
        ([], "succeed"),
        ([], "fail"),
        (["start"], "start"),
        (["start", "fail"], "succeed"),
        (["skip"], "start"),
    ],
)
def test_invalid_transitions(setup, transition):
    state = NodeExecutionState(node_id="n", node_type="work", label="N")
    arguments = {"start": (), "succeed": ({},), "fail": ("err",), "skip": ("why",)}
    for step in setup:
        getattr(state, step)(*arguments[step])

    with pytest.raises(InvalidStateTransition):
        getattr(state, transition)(*arguments[transition])


# === ExecutionPlan ===


def test_plan_nodes_follow_topological_order():
    plan = _plan()
    assert list(plan.nodes) == ["in", "work", "out"]
    assert plan.workflow_id == "test-graph"
    assert plan.status == ExecutionStatus.PENDING


def test_plan_counts_and_outputs():
    plan = _plan()
    plan.start()
    plan.mark_running("in")
    plan.mark_success("in", NodeOutput(node_id="in", output="x", data={"input": "x"}))
    plan.mark_running("work")
    plan.mark_failed("work", "boom")
    plan.mark_skipped("out", "Dependency failed: work")

    assert (plan.completed_nodes, plan.failed_nodes, plan.skipped_nodes) == (1, 1, 1)
    assert plan.nodes["in"].outputs == {"output": "x", "data": {"input": "x"}}
    assert plan.errors == {"work": "boom"}
    assert list(plan.outputs) == ["in"]


def test_finish_freezes_plan():
    plan = _plan()
    plan.start()
    plan.finish(ExecutionStatus.CANCELLED)

    assert plan.frozen
    assert plan.is_terminal
    assert plan.total_duration_ms is not None
    with pytest.raises(PlanFrozenError):
        plan.mark_running("in")


def test_freeze_requires_terminal_status():
    plan = _plan()
    plan.start()
    with pytest.raises(InvalidStateTransition):
        plan.freeze()


def test_raise_for_status():
    cancelled = _plan()
    cancelled.errors["cancelled"] = "Execution cancelled"
    cancelled.finish(ExecutionStatus.CANCELLED)
    with pytest.raises(ExecutionCancelledError, match="Execution cancelled"):
        cancelled.raise_for_status()

    failed = _plan()
    failed.errors["validation"] = "Workflow has no input node"
    failed.finish(ExecutionStatus.FAILED)
    with pytest.raises(ExecutionFailedError, match="validation: Workflow has no input node"):
        failed.raise_for_status()


def test_plan_to_dict():
    plan = _plan()
    data = plan.to_dict()
    assert data["id"] == "exec_1"
    assert data["mode"] == "sequential"
    assert data["status"] == "pending"
    assert data["config"]["max_concurrency"] == 5
    assert data["validation"] is None
    assert [n["status"] for n in data["nodes"]] == ["pending"] * 3
