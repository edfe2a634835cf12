"""
Execution Engine - Runs workflow graphs.

The engine:
1. Validates the graph (invalid graphs never start)
2. Picks a scheduling mode (sequential / parallel / conditional)
3. Pre-compiles every node's config templates
4. Runs nodes as their dependencies finish, up to max_concurrency at once
5. Retries failed processor calls with exponential backoff
6. Publishes progress to the EventBus
7. Returns the finished ExecutionPlan

One asyncio driver per run owns all plan state. Node invocations run as
tasks and hand back an outcome; they never touch the plan themselves.
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from nodeflow.graph.edge import EdgeSpec, GraphModel
from nodeflow.graph.node import (
    NodeCondition,
    NodeOutput,
    NodeProcessor,
    NodeRole,
    NodeSpec,
    ProcessorNotFoundError,
)
from nodeflow.graph.plan import (
    ExecutionConfig,
    ExecutionMode,
    ExecutionPlan,
    ExecutionStatus,
    NodeStatus,
)
from nodeflow.graph.templates import VariableResolver
from nodeflow.graph.validator import GraphValidator, ValidationResult, WorkflowValidationError
from nodeflow.observability import set_trace_context
from nodeflow.runtime.event_bus import EventBus
from nodeflow.runtime.node_registry import NodeTypeRegistry


# Why a node was skipped, as seen by its dependents in conditional mode
_SKIP_BRANCH = "branch"  # condition false, or only reachable through such a node
_SKIP_FAILURE = "failure"  # an upstream node failed


@dataclass
class _NodeInvocation:
    """Bookkeeping for one in-flight node task."""

    node_id: str
    processor: NodeProcessor | None = None
    attempts: int = 0


@dataclass
class _NodeOutcome:
    node_id: str
    output: NodeOutput | None = None
    error: str | None = None


@dataclass
class _RunContext:
    plan: ExecutionPlan
    input_data: Any = None
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    # Set once the run is terminal; in-flight tasks stop retrying
    stopped: bool = False
    skip_kinds: dict[str, str] = field(default_factory=dict)
    running: dict[asyncio.Task, _NodeInvocation] = field(default_factory=dict)


class ExecutionEngine:
    """
    Executes workflow graphs.

    Example:
        registry = NodeTypeRegistry()
        register_builtin_processors(registry)
        registry.register_processor(NodeType.LLM_TASK, MyLLMProcessor())

        engine = ExecutionEngine(registry=registry, event_bus=EventBus())

        plan = await engine.execute(
            graph,
            config=ExecutionConfig(mode=ExecutionMode.PARALLEL, max_concurrency=3),
            input_data="https://example.com",
        )
    """

    def __init__(
        self,
        registry: NodeTypeRegistry | None = None,
        event_bus: EventBus | None = None,
        validator: GraphValidator | None = None,
        resolver: VariableResolver | None = None,
        max_history: int = 100,
    ):
        """
        Initialize the engine.

        Args:
            registry: Node types and their processors
            event_bus: Where progress events are published
            validator: Graph validator (defaults to one backed by ``registry``)
            resolver: Template resolver for node configs
            max_history: Finished plans kept for status queries and stats
        """
        self.registry = registry or NodeTypeRegistry()
        self.event_bus = event_bus or EventBus()
        self.validator = validator or GraphValidator(self.registry)
        self.resolver = resolver or VariableResolver()
        self.logger = logging.getLogger(__name__)

        self._conditions: dict[str, NodeCondition] = {}
        self._active: dict[str, _RunContext] = {}
        self._history: deque[ExecutionPlan] = deque(maxlen=max_history)
        # Abandoned node tasks still finishing after a timeout or cancel
        self._detached: set[asyncio.Task] = set()

    # === Public API ===

    def register_condition(self, node_id: str, predicate: NodeCondition) -> None:
        """
        Attach a predicate to a node (conditional mode).

        The predicate gets ``{predecessor_id: NodeOutput}`` for the node's
        successful predecessors and returns a bool (or an awaitable of one).
        A condition set on the NodeSpec itself takes precedence.
        """
        self._conditions[node_id] = predicate

    def validate_or_raise(self, graph: GraphModel) -> ValidationResult:
        """
        Raises:
            WorkflowValidationError: if the graph is not valid
        """
        result = self.validator.validate_graph(graph)
        if not result.is_valid:
            raise WorkflowValidationError(result)
        return result

    async def execute_workflow(
        self,
        nodes: Sequence[NodeSpec | dict[str, Any]],
        edges: Sequence[EdgeSpec | dict[str, Any]],
        config: ExecutionConfig | dict[str, Any] | None = None,
        input_data: Any = None,
        execution_id: str | None = None,
        workflow_id: str = "workflow",
        name: str = "",
    ) -> ExecutionPlan:
        """Run raw editor nodes and edges. Malformed payloads yield a failed plan."""
        try:
            graph = GraphModel(id=workflow_id, name=name, nodes=list(nodes), edges=list(edges))
        except ValidationError:
            validation = self.validator.validate(nodes, edges)
            if validation.is_valid:
                raise
            return self._reject(
                GraphModel(id=workflow_id, name=name),
                self._coerce_config(config),
                execution_id or self._new_execution_id(),
                validation,
            )
        return await self.execute(graph, config, input_data, execution_id)

    async def execute(
        self,
        graph: GraphModel,
        config: ExecutionConfig | dict[str, Any] | None = None,
        input_data: Any = None,
        execution_id: str | None = None,
    ) -> ExecutionPlan:
        """
        Execute a graph.

        Args:
            graph: The workflow to run
            config: Mode, concurrency, timeout and retry policy
            input_data: Test input handed to input-role nodes as ``input``
            execution_id: Explicit id (generated if omitted)

        Returns:
            The finished (frozen) ExecutionPlan
        """
        config = self._coerce_config(config)
        execution_id = execution_id or self._new_execution_id()
        set_trace_context(execution_id=execution_id, workflow_id=graph.id)

        validation = self.validator.validate_graph(graph)
        if not validation.is_valid:
            return self._reject(graph, config, execution_id, validation)

        mode = self._resolve_mode(graph, config)
        plan = ExecutionPlan.for_graph(execution_id, graph, config, mode)
        plan.validation = validation
        ctx = _RunContext(plan=plan, input_data=input_data)
        self._active[execution_id] = ctx

        self.logger.info(
            f"🚀 Starting execution {execution_id}: {graph.name or graph.id} "
            f"({len(plan.nodes)} nodes, mode={mode})"
        )
        plan.start()
        self.event_bus.emit_execution_start(execution_id, graph.id, len(plan.nodes), str(mode))

        status = ExecutionStatus.FAILED
        try:
            status = await self._drive(ctx)
        except Exception as e:
            self.logger.exception(f"❌ Execution {execution_id} crashed: {e}")
            ctx.stopped = True
            plan.errors["engine"] = str(e)
            self.event_bus.emit_execution_error(execution_id, str(e), stage="engine")
        finally:
            self._finalize(ctx, status)

        return plan

    def cancel_execution(self, execution_id: str) -> bool:
        """Ask a running execution to stop. Returns False if it is not active."""
        ctx = self._active.get(execution_id)
        if ctx is None:
            return False
        self.logger.info(f"⏹ Cancellation requested for {execution_id}")
        ctx.cancel_requested.set()
        return True

    def get_execution_status(self, execution_id: str) -> ExecutionPlan | None:
        """Live plan of an active run, or the finished plan from history."""
        ctx = self._active.get(execution_id)
        if ctx is not None:
            return ctx.plan
        for plan in self._history:
            if plan.id == execution_id:
                return plan
        return None

    def get_active_executions(self) -> list[ExecutionPlan]:
        return [ctx.plan for ctx in self._active.values()]

    def get_execution_history(self, limit: int | None = None) -> list[ExecutionPlan]:
        """Finished plans, oldest first (the last ``limit`` if given)."""
        plans = list(self._history)
        return plans[-limit:] if limit else plans

    def get_execution_stats(self) -> dict[str, Any]:
        plans = list(self._history)
        by_status = {str(s): 0 for s in ExecutionStatus if s.is_terminal()}
        for plan in plans:
            by_status[str(plan.status)] = by_status.get(str(plan.status), 0) + 1

        durations = [p.total_duration_ms for p in plans if p.total_duration_ms is not None]
        completed = by_status[str(ExecutionStatus.COMPLETED)]
        return {
            "total_executions": len(plans),
            "active_executions": len(self._active),
            "by_status": by_status,
            "success_rate": completed / len(plans) if plans else 0.0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
        }

    # === Setup ===

    @staticmethod
    def _new_execution_id() -> str:
        return f"exec_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _coerce_config(config: ExecutionConfig | dict[str, Any] | None) -> ExecutionConfig:
        if config is None:
            return ExecutionConfig()
        if isinstance(config, ExecutionConfig):
            return config
        return ExecutionConfig.model_validate(config)

    def _condition_for(self, node: NodeSpec) -> NodeCondition | None:
        return node.condition or self._conditions.get(node.id)

    def _resolve_mode(self, graph: GraphModel, config: ExecutionConfig) -> ExecutionMode:
        if config.mode is not None:
            if config.mode != ExecutionMode.CONDITIONAL and any(
                self._condition_for(n) for n in graph.nodes
            ):
                self.logger.warning(
                    f"⚠ Node conditions are ignored in {config.mode} mode; "
                    "use conditional mode to apply them"
                )
            return config.mode
        if any(self._condition_for(n) for n in graph.nodes):
            return ExecutionMode.CONDITIONAL
        if graph.has_independent_branches():
            return ExecutionMode.PARALLEL
        return ExecutionMode.SEQUENTIAL

    def _reject(
        self,
        graph: GraphModel,
        config: ExecutionConfig,
        execution_id: str,
        validation: ValidationResult,
    ) -> ExecutionPlan:
        """Failed plan for a graph that did not pass validation. No node runs."""
        plan = ExecutionPlan.for_graph(
            execution_id, graph, config, config.mode or ExecutionMode.SEQUENTIAL
        )
        plan.validation = validation
        plan.errors["validation"] = validation.error
        plan.start()

        self.logger.error(f"❌ Workflow validation failed: {validation.error}")
        self.event_bus.emit_execution_error(execution_id, validation.error, stage="validation")

        plan.finish(ExecutionStatus.FAILED)
        self._history.append(plan)
        self.event_bus.emit_execution_complete(
            execution_id,
            status=str(plan.status),
            completed_nodes=0,
            failed_nodes=0,
            skipped_nodes=0,
            total_duration_ms=plan.total_duration_ms,
        )
        return plan

    # === Driver ===

    async def _drive(self, ctx: _RunContext) -> ExecutionStatus:
        plan = ctx.plan
        graph = plan.graph
        config = plan.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.timeout / 1000
        bound = 1 if plan.mode == ExecutionMode.SEQUENTIAL else config.max_concurrency

        aliases = graph.label_to_id()
        compiled = {node.id: self.resolver.compile_config(node.config) for node in graph.nodes}
        running = ctx.running
        cancel_waiter = asyncio.ensure_future(ctx.cancel_requested.wait())

        try:
            while True:
                try:
                    await self._launch_ready(ctx, running, bound, compiled, aliases, deadline)
                except TimeoutError:
                    return self._abort(ctx, running, ExecutionStatus.TIMED_OUT)
                if not running:
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    return self._abort(ctx, running, ExecutionStatus.TIMED_OUT)

                done, _ = await asyncio.wait(
                    [*running, cancel_waiter],
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                # Record nodes that finished before acting on a cancel
                for task in done:
                    if task is not cancel_waiter:
                        self._apply_outcome(ctx, running.pop(task), task.result())

                if cancel_waiter in done:
                    return self._abort(ctx, running, ExecutionStatus.CANCELLED)
                if not done:
                    return self._abort(ctx, running, ExecutionStatus.TIMED_OUT)
        finally:
            cancel_waiter.cancel()

        pending = [s for s in plan.node_states if s.status == NodeStatus.PENDING]
        if pending and ctx.cancel_requested.is_set():
            return self._abort(ctx, running, ExecutionStatus.CANCELLED)
        if pending and loop.time() >= deadline:
            return self._abort(ctx, running, ExecutionStatus.TIMED_OUT)

        # Nothing left to run; anything still pending can never start
        for state in pending:
            node = plan.graph.get_node(state.node_id)
            self._skip(ctx, node, _SKIP_FAILURE, "Dependencies never completed")
        return ExecutionStatus.FAILED if plan.failed_nodes else ExecutionStatus.COMPLETED

    async def _launch_ready(
        self,
        ctx: _RunContext,
        running: dict[asyncio.Task, _NodeInvocation],
        bound: int,
        compiled: dict[str, Any],
        aliases: dict[str, str],
        deadline: float,
    ) -> None:
        """
        Skip what can no longer run and start what is ready, up to ``bound``.

        Raises:
            TimeoutError: if the run deadline passes before a ready node starts
        """
        plan = ctx.plan
        loop = asyncio.get_running_loop()
        progressed = True
        while progressed and len(running) < bound and not ctx.cancel_requested.is_set():
            progressed = False
            for state in plan.node_states:
                if len(running) >= bound:
                    break
                if state.status != NodeStatus.PENDING:
                    continue

                node = plan.graph.get_node(state.node_id)
                verdict = self._readiness(ctx, node)
                if verdict is None:
                    continue
                if verdict != "run":
                    kind, reason = verdict
                    self._skip(ctx, node, kind, reason)
                    progressed = True
                    continue

                if loop.time() >= deadline:
                    raise TimeoutError(f"Deadline passed before '{node.label}' could start")

                upstream = {
                    pred: plan.outputs[pred]
                    for pred in plan.graph.predecessors(node.id)
                    if pred in plan.outputs
                }
                if plan.mode == ExecutionMode.CONDITIONAL:
                    predicate = self._condition_for(node)
                    if predicate is not None and not await self._check_condition(
                        node, predicate, upstream, deadline
                    ):
                        self._skip(ctx, node, _SKIP_BRANCH, "Condition not met")
                        progressed = True
                        continue
                    if loop.time() >= deadline:
                        raise TimeoutError(f"Deadline passed while checking '{node.label}'")

                self._start_node(ctx, node, running, compiled[node.id], aliases, upstream)
                progressed = True
                if plan.mode == ExecutionMode.SEQUENTIAL:
                    # Strict topological order: rescan from the top
                    break

    def _readiness(self, ctx: _RunContext, node: NodeSpec) -> str | tuple[str, str] | None:
        """
        "run" if the node can start, (skip_kind, reason) if it never will,
        None if some predecessor is still unfinished.
        """
        plan = ctx.plan
        preds = plan.graph.predecessors(node.id)
        states = [plan.nodes[p] for p in preds if p in plan.nodes]
        if any(not s.status.is_terminal() for s in states):
            return None

        failed = [s.node_id for s in states if s.status == NodeStatus.FAILED]
        if failed:
            return _SKIP_FAILURE, f"Dependency failed: {', '.join(failed)}"

        skipped = [s.node_id for s in states if s.status == NodeStatus.SKIPPED]
        if not skipped:
            return "run"

        if plan.mode != ExecutionMode.CONDITIONAL:
            return _SKIP_FAILURE, f"Dependency skipped: {', '.join(skipped)}"

        # Conditional mode: an inactive branch is fine at a join if another
        # predecessor succeeded; an upstream failure still propagates.
        if any(ctx.skip_kinds.get(p) == _SKIP_FAILURE for p in skipped):
            return _SKIP_FAILURE, f"Dependency skipped: {', '.join(skipped)}"
        if any(s.status == NodeStatus.SUCCESS for s in states):
            return "run"
        return _SKIP_BRANCH, f"All dependencies skipped by conditions: {', '.join(skipped)}"

    async def _check_condition(
        self,
        node: NodeSpec,
        predicate: NodeCondition,
        upstream: dict[str, NodeOutput],
        deadline: float,
    ) -> bool:
        """
        Evaluate a node condition. A predicate that raises counts as false.

        Raises:
            TimeoutError: if the run deadline passes while the predicate runs
        """
        loop = asyncio.get_running_loop()
        try:
            result = predicate(upstream)
            if inspect.isawaitable(result):
                remaining = max(deadline - loop.time(), 0)
                result = await asyncio.wait_for(result, timeout=remaining)
            return bool(result)
        except Exception as e:
            if isinstance(e, TimeoutError) and loop.time() >= deadline:
                raise
            self.logger.warning(f"⚠ Condition for '{node.label}' raised, treating as false: {e}")
            return False

    def _skip(self, ctx: _RunContext, node: NodeSpec, kind: str, reason: str) -> None:
        ctx.plan.mark_skipped(node.id, reason)
        ctx.skip_kinds[node.id] = kind
        self.logger.info(f"   ⊘ Skipped {node.label}: {reason}")
        self.event_bus.emit_node_complete(
            ctx.plan.id, node.id, node.label, status=str(NodeStatus.SKIPPED)
        )

    def _start_node(
        self,
        ctx: _RunContext,
        node: NodeSpec,
        running: dict[asyncio.Task, _NodeInvocation],
        compiled_config: Any,
        aliases: dict[str, str],
        upstream: dict[str, NodeOutput],
    ) -> None:
        plan = ctx.plan
        resolved = self.resolver.render_config(compiled_config, plan.outputs, aliases)
        if node.role == NodeRole.INPUT and ctx.input_data is not None:
            resolved["input"] = ctx.input_data

        plan.mark_running(node.id)
        self.logger.info(f"▶ {node.label} ({node.type})")
        self.event_bus.emit_node_start(plan.id, node.id, node.label)

        try:
            processor = self.registry.get_processor(node.type)
        except ProcessorNotFoundError as e:
            self._apply_outcome(
                ctx,
                _NodeInvocation(node_id=node.id),
                _NodeOutcome(node_id=node.id, error=str(e)),
            )
            return

        invocation = _NodeInvocation(node_id=node.id, processor=processor)
        task = asyncio.create_task(
            self._invoke(ctx, node, invocation, resolved, upstream),
            name=f"{plan.id}:{node.id}",
        )
        running[task] = invocation

    def _apply_outcome(
        self, ctx: _RunContext, invocation: _NodeInvocation, outcome: _NodeOutcome
    ) -> None:
        plan = ctx.plan
        node = plan.graph.get_node(outcome.node_id)
        state = plan.nodes[outcome.node_id]
        state.attempts = invocation.attempts

        if outcome.output is not None:
            plan.mark_success(node.id, outcome.output)
            self.logger.info(f"   ✓ {node.label} completed in {state.duration_ms:.0f}ms")
            self.event_bus.emit_node_progress(plan.id, node.id, node.label, 100)
            self.event_bus.emit_node_complete(
                plan.id,
                node.id,
                node.label,
                status=str(NodeStatus.SUCCESS),
                duration_ms=state.duration_ms,
                output=outcome.output.output,
            )
            return

        error = outcome.error or "Unknown error"
        plan.mark_failed(node.id, error)
        self.logger.error(f"   ✗ {node.label} failed after {state.attempts} attempt(s): {error}")
        self.event_bus.emit_node_complete(
            plan.id,
            node.id,
            node.label,
            status=str(NodeStatus.FAILED),
            duration_ms=state.duration_ms,
            error=error,
        )

        if plan.mode == ExecutionMode.SEQUENTIAL:
            self.event_bus.emit_execution_error(plan.id, error, stage="node", node_id=node.id)
            for pending in plan.node_states:
                if pending.status == NodeStatus.PENDING:
                    self._skip(
                        ctx,
                        plan.graph.get_node(pending.node_id),
                        _SKIP_FAILURE,
                        f"Execution halted after '{node.label}' failed",
                    )

    async def _invoke(
        self,
        ctx: _RunContext,
        node: NodeSpec,
        invocation: _NodeInvocation,
        config: dict[str, Any],
        upstream: dict[str, NodeOutput],
    ) -> _NodeOutcome:
        """Run one node with retries. Never raises (except on cancellation)."""
        set_trace_context(node_id=node.id)
        policy = ctx.plan.config.retry_policy

        while True:
            invocation.attempts += 1
            attempt = invocation.attempts
            try:
                result = await invocation.processor.execute(dict(config), upstream)
                return _NodeOutcome(node_id=node.id, output=NodeOutput.from_result(node.id, result))
            except Exception as e:
                error = str(e) or e.__class__.__name__

            if ctx.stopped or not policy.should_retry(attempt):
                return _NodeOutcome(node_id=node.id, error=error)

            delay_ms = policy.delay_for(attempt)
            self.logger.warning(
                f"   ↻ Retrying {node.label} ({attempt}/{policy.max_attempts}) "
                f"in {delay_ms:.0f}ms: {error}"
            )
            self.event_bus.emit_node_retry(
                ctx.plan.id,
                node.id,
                node.label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_ms=delay_ms,
                error=error,
            )
            await asyncio.sleep(delay_ms / 1000)
            if ctx.stopped:
                return _NodeOutcome(node_id=node.id, error=error)

    # === Termination ===

    def _abort(
        self,
        ctx: _RunContext,
        running: dict[asyncio.Task, _NodeInvocation],
        status: ExecutionStatus,
    ) -> ExecutionStatus:
        """Stop a run on timeout or cancellation."""
        plan = ctx.plan
        ctx.stopped = True
        if status == ExecutionStatus.TIMED_OUT:
            key = "timeout"
            message = f"Execution exceeded timeout of {plan.config.timeout:.0f}ms"
            self.logger.error(f"⏱ {message}")
        else:
            key = "cancelled"
            message = "Execution cancelled"
            self.logger.warning(f"⏹ {message}")

        for invocation in self._release(running):
            node = plan.graph.get_node(invocation.node_id)
            plan.nodes[node.id].attempts = invocation.attempts
            plan.mark_failed(node.id, f"{message} while running")
            self.event_bus.emit_node_complete(
                plan.id,
                node.id,
                node.label,
                status=str(NodeStatus.FAILED),
                duration_ms=plan.nodes[node.id].duration_ms,
                error=plan.nodes[node.id].error,
            )

        for state in plan.node_states:
            if state.status == NodeStatus.PENDING:
                self._skip(ctx, plan.graph.get_node(state.node_id), _SKIP_FAILURE, message)

        plan.errors[key] = message
        self.event_bus.emit_execution_error(plan.id, message, stage=key)
        return status

    def _release(self, running: dict[asyncio.Task, _NodeInvocation]) -> list[_NodeInvocation]:
        """Cancel or detach every in-flight task and return their invocations."""
        invocations = []
        for task, invocation in running.items():
            if getattr(invocation.processor, "supports_cancellation", False):
                task.cancel()
            self._detach(task)
            invocations.append(invocation)
        running.clear()
        return invocations

    def _detach(self, task: asyncio.Task) -> None:
        self._detached.add(task)
        task.add_done_callback(self._discard)

    def _discard(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.debug(f"Abandoned node task {task.get_name()} raised: {exc}")
            return
        self.logger.info(f"Discarded late result of {task.get_name()}")

    def _finalize(self, ctx: _RunContext, status: ExecutionStatus) -> None:
        plan = ctx.plan
        ctx.stopped = True
        # Only reached with pending/running nodes after an engine crash
        self._release(ctx.running)
        for state in plan.node_states:
            if state.status == NodeStatus.RUNNING:
                plan.mark_failed(state.node_id, "Execution aborted")
            elif state.status == NodeStatus.PENDING:
                plan.mark_skipped(state.node_id, "Execution aborted")

        plan.finish(status)
        self._active.pop(plan.id, None)
        self._history.append(plan)

        marker = "✓" if status == ExecutionStatus.COMPLETED else "✗"
        self.logger.info(
            f"{marker} Execution {plan.id} {status}: "
            f"{plan.completed_nodes} completed, {plan.failed_nodes} failed, "
            f"{plan.skipped_nodes} skipped in {plan.total_duration_ms:.0f}ms"
        )
        self.event_bus.emit_execution_complete(
            plan.id,
            status=str(status),
            completed_nodes=plan.completed_nodes,
            failed_nodes=plan.failed_nodes,
            skipped_nodes=plan.skipped_nodes,
            total_duration_ms=plan.total_duration_ms,
        )
