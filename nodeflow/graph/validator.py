"""Structural validation for workflow graphs.

Runs before any node executes. The engine refuses to schedule a graph whose
result is not valid. Validation never raises: malformed input is reported
as issues on the returned ValidationResult.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from nodeflow.graph.edge import EdgeSpec, GraphModel
from nodeflow.graph.node import NodeRole, NodeSpec
from nodeflow.graph.templates import extract_variables
from nodeflow.runtime.node_registry import NodeTypeRegistry, SupportStatus

logger = logging.getLogger(__name__)


class IssueSeverity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """One problem found in a graph."""

    id: str
    severity: IssueSeverity
    type: str
    message: str
    suggestion: str = ""
    node_ids: list[str] = field(default_factory=list)
    edge_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = str(self.severity)
        return data


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(issue.message for issue in self.errors)

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == IssueSeverity.ERROR:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)

    def issues_of_type(self, issue_type: str) -> list[ValidationIssue]:
        return [i for i in [*self.errors, *self.warnings] if i.type == issue_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "stats": dict(self.stats),
        }


class WorkflowValidationError(Exception):
    """Raised when a caller insists on a valid graph and it is not."""

    def __init__(self, result: ValidationResult):
        super().__init__(f"Workflow validation failed: {result.error}")
        self.result = result


def _error(
    issue_id: str, issue_type: str, message: str, suggestion: str = "", **kw: Any
) -> ValidationIssue:
    return ValidationIssue(
        id=issue_id,
        severity=IssueSeverity.ERROR,
        type=issue_type,
        message=message,
        suggestion=suggestion,
        **kw,
    )


def _warning(
    issue_id: str, issue_type: str, message: str, suggestion: str = "", **kw: Any
) -> ValidationIssue:
    return ValidationIssue(
        id=issue_id,
        severity=IssueSeverity.WARNING,
        type=issue_type,
        message=message,
        suggestion=suggestion,
        **kw,
    )


def _iter_config_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_config_strings(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from _iter_config_strings(item)


class GraphValidator:
    """
    Checks the structural rules of a workflow graph.

    Checks, in order:
    - empty workflow
    - duplicate node ids and labels
    - required input and output nodes
    - edge integrity (duplicate ids, missing endpoints, self-loops)
    - orphan nodes (one is tolerated, more is an error)
    - directed cycles
    - node-type support level
    - required config keys per node type
    - template references to nodes that do not exist
    """

    def __init__(self, registry: NodeTypeRegistry | None = None):
        self.registry = registry or NodeTypeRegistry()

    def validate_graph(self, graph: GraphModel) -> ValidationResult:
        return self.validate(graph.nodes, graph.edges)

    def validate(
        self,
        nodes: Sequence[NodeSpec | dict[str, Any]],
        edges: Sequence[EdgeSpec | dict[str, Any]],
    ) -> ValidationResult:
        """Validate raw or parsed nodes and edges. Never raises."""
        result = ValidationResult(
            stats={
                "total_nodes": len(nodes),
                "total_edges": len(edges),
                "input_nodes": 0,
                "output_nodes": 0,
                "connected_components": 0,
            }
        )

        if not nodes:
            result.add(
                _error(
                    "empty_workflow",
                    "empty_workflow",
                    "Workflow contains no nodes",
                    "Add at least one node to the workflow",
                )
            )
            return result

        parsed_nodes = self._parse_nodes(nodes, result)
        parsed_edges = self._parse_edges(edges, result)

        node_ids = self._check_nodes(parsed_nodes, result)
        self._check_roles(parsed_nodes, result)
        adjacency, edge_index = self._check_edges(parsed_edges, node_ids, result)
        self._check_orphans(parsed_nodes, parsed_edges, result)
        self._check_cycles(node_ids, adjacency, edge_index, result)
        self._check_node_types(parsed_nodes, result)
        self._check_configs(parsed_nodes, result)
        self._check_references(parsed_nodes, result)
        result.stats["connected_components"] = self._count_components(node_ids, adjacency)

        if result.is_valid:
            logger.debug(
                f"Graph valid: {len(parsed_nodes)} nodes, {len(parsed_edges)} edges, "
                f"{len(result.warnings)} warning(s)"
            )
        else:
            logger.debug(f"Graph invalid: {result.error}")
        return result

    # === Parsing ===

    def _parse_nodes(self, nodes, result: ValidationResult) -> list[NodeSpec]:
        parsed = []
        for index, node in enumerate(nodes):
            if isinstance(node, NodeSpec):
                parsed.append(node)
                continue
            try:
                parsed.append(NodeSpec.model_validate(node))
            except ValidationError as e:
                result.add(
                    _error(
                        f"invalid_node_{index}",
                        "invalid_node",
                        f"Node at position {index} is malformed: {e.errors()[0]['msg']}",
                        "Ensure every node has an id and a type",
                    )
                )
        return parsed

    def _parse_edges(self, edges, result: ValidationResult) -> list[EdgeSpec]:
        parsed = []
        for index, edge in enumerate(edges):
            if isinstance(edge, EdgeSpec):
                parsed.append(edge)
                continue
            try:
                parsed.append(EdgeSpec.model_validate(edge))
            except ValidationError as e:
                missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
                result.add(
                    _error(
                        f"invalid_edge_{index}",
                        "invalid_edge",
                        f"Edge at position {index} is missing required properties: {missing}",
                        "Ensure all edges have id, source, and target properties",
                    )
                )
        return parsed

    # === Checks ===

    def _check_nodes(self, nodes: list[NodeSpec], result: ValidationResult) -> list[str]:
        node_ids: list[str] = []
        for node in nodes:
            if node.id in node_ids:
                result.add(
                    _error(
                        f"duplicate_node_{node.id}",
                        "duplicate_node",
                        f"Duplicate node ID: {node.id}",
                        "Each node must have a unique ID",
                        node_ids=[node.id],
                    )
                )
                continue
            node_ids.append(node.id)

        by_label: dict[str, list[str]] = {}
        for node in nodes:
            by_label.setdefault(node.label, []).append(node.id)
        for label, ids in by_label.items():
            if len(ids) > 1:
                result.add(
                    _error(
                        f"duplicate_label_{label}",
                        "duplicate_label",
                        f"Label '{label}' is used by {len(ids)} nodes: {', '.join(ids)}",
                        "Give each node a unique label so templates can refer to it",
                        node_ids=ids,
                    )
                )
        return node_ids

    def _check_roles(self, nodes: list[NodeSpec], result: ValidationResult) -> None:
        inputs = [n for n in nodes if n.role == NodeRole.INPUT]
        outputs = [n for n in nodes if n.role == NodeRole.OUTPUT]
        result.stats["input_nodes"] = len(inputs)
        result.stats["output_nodes"] = len(outputs)

        if not inputs:
            result.add(
                _error(
                    "no_input_node",
                    "no_input_node",
                    "Workflow has no input node (dataInput)",
                    "Add a Data Input node to provide initial data to the workflow",
                )
            )
        if not outputs:
            result.add(
                _error(
                    "no_output_node",
                    "no_output_node",
                    "Workflow has no output node (dataOutput)",
                    "Add a Data Output node to collect workflow results",
                )
            )

    def _check_edges(
        self, edges: list[EdgeSpec], node_ids: list[str], result: ValidationResult
    ) -> tuple[dict[str, list[str]], dict[tuple[str, str], str]]:
        known = set(node_ids)
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
        edge_index: dict[tuple[str, str], str] = {}
        seen_ids: set[str] = set()

        for edge in edges:
            if edge.id in seen_ids:
                result.add(
                    _error(
                        f"duplicate_edge_{edge.id}",
                        "invalid_edge",
                        f"Duplicate edge ID: {edge.id}",
                        "Each edge must have a unique ID",
                        edge_ids=[edge.id],
                    )
                )
                continue
            seen_ids.add(edge.id)

            missing = [end for end in (edge.source, edge.target) if end not in known]
            if missing:
                for end in dict.fromkeys(missing):
                    which = "source" if end == edge.source else "target"
                    result.add(
                        _error(
                            f"invalid_{which}_{edge.id}",
                            "invalid_edge",
                            f"Edge {edge.id} references non-existent {which} node: {end}",
                            f"Verify the {which} node exists in the workflow",
                            edge_ids=[edge.id],
                        )
                    )
                continue

            if edge.source == edge.target:
                result.add(
                    _error(
                        f"self_loop_{edge.id}",
                        "self_loop",
                        f"Self-loop detected: node {edge.source} cannot connect to itself",
                        "Remove the self-referencing connection",
                        node_ids=[edge.source],
                        edge_ids=[edge.id],
                    )
                )
                continue

            if edge.target not in adjacency[edge.source]:
                adjacency[edge.source].append(edge.target)
            edge_index.setdefault((edge.source, edge.target), edge.id)

        return adjacency, edge_index

    def _check_orphans(
        self, nodes: list[NodeSpec], edges: list[EdgeSpec], result: ValidationResult
    ) -> None:
        connected = {e.source for e in edges} | {e.target for e in edges}
        orphans = list(dict.fromkeys(n.id for n in nodes if n.id not in connected))
        if len(nodes) < 2 or not orphans:
            return

        if len(orphans) == 1:
            result.add(
                _warning(
                    "orphan_node",
                    "orphan_node",
                    f"Node {orphans[0]} is not connected to any other node",
                    "Connect it to the workflow or remove it",
                    node_ids=orphans,
                )
            )
        else:
            result.add(
                _error(
                    "orphan_node",
                    "orphan_node",
                    f"Orphaned nodes detected: {', '.join(orphans)}",
                    "Connect all nodes in the workflow",
                    node_ids=orphans,
                )
            )

    def _check_cycles(
        self,
        node_ids: list[str],
        adjacency: dict[str, list[str]],
        edge_index: dict[tuple[str, str], str],
        result: ValidationResult,
    ) -> None:
        for index, cycle in enumerate(self.find_cycles(node_ids, adjacency)):
            pairs = list(zip(cycle, cycle[1:], strict=False))
            result.add(
                _error(
                    f"circular_dependency_{index}",
                    "circular_dependency",
                    f"Circular dependency detected: {' -> '.join(cycle)}",
                    "Remove one of the connections to create a valid execution path",
                    node_ids=cycle[:-1],
                    edge_ids=[edge_index[pair] for pair in pairs if pair in edge_index],
                )
            )

    @staticmethod
    def find_cycles(node_ids: list[str], adjacency: dict[str, list[str]]) -> list[list[str]]:
        """
        DFS with an explicit recursion stack.

        Each cycle is returned once, as a closed path (first id repeated at
        the end), rotated to start at its earliest node in ``node_ids``.
        """
        position = {node_id: i for i, node_id in enumerate(node_ids)}
        unvisited, on_stack, done = 0, 1, 2
        state = dict.fromkeys(node_ids, unvisited)
        cycles: list[list[str]] = []
        seen: set[tuple[str, ...]] = set()

        for root in node_ids:
            if state[root] != unvisited:
                continue
            path = [root]
            state[root] = on_stack
            stack = [iter(adjacency.get(root, []))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    state[path.pop()] = done
                    continue
                if state[child] == on_stack:
                    body = path[path.index(child) :]
                    start = min(range(len(body)), key=lambda i: position[body[i]])
                    body = body[start:] + body[:start]
                    if tuple(body) not in seen:
                        seen.add(tuple(body))
                        cycles.append([*body, body[0]])
                elif state[child] == unvisited:
                    state[child] = on_stack
                    path.append(child)
                    stack.append(iter(adjacency.get(child, [])))
        return cycles

    def _check_node_types(self, nodes: list[NodeSpec], result: ValidationResult) -> None:
        for node in nodes:
            diagnostic = self.registry.diagnose(node.type)
            if diagnostic.status == SupportStatus.SUPPORTED:
                continue
            make_issue = _error if diagnostic.severity == IssueSeverity.ERROR else _warning
            result.add(
                make_issue(
                    f"{diagnostic.status}_node_type_{node.id}",
                    f"{diagnostic.status}_node_type",
                    f"Node '{node.label}': {diagnostic.warning}",
                    diagnostic.suggestion or "",
                    node_ids=[node.id],
                )
            )

    def _check_configs(self, nodes: list[NodeSpec], result: ValidationResult) -> None:
        for node in nodes:
            if node.node_type is None:
                # Unknown types are reported by the type check
                continue
            try:
                node.typed_config()
            except ValidationError as e:
                fields: dict[str, bool] = {}
                for err in e.errors():
                    if not err["loc"]:
                        continue
                    name = str(err["loc"][0])
                    value = node.config.get(name)
                    missing = err["type"] in ("missing", "string_too_short") or value in (None, "")
                    fields[name] = fields.get(name, False) or missing

                for name, missing in fields.items():
                    if missing:
                        result.add(
                            _error(
                                f"missing_config_{node.id}_{name}",
                                "missing_config",
                                f"Node '{node.label}' ({node.type}) is missing required "
                                f"config '{name}'",
                                f"Configure '{name}' for the {node.type} node",
                                node_ids=[node.id],
                            )
                        )
                    else:
                        result.add(
                            _error(
                                f"invalid_config_{node.id}_{name}",
                                "invalid_config",
                                f"Node '{node.label}' ({node.type}) has an invalid value "
                                f"for config '{name}'",
                                f"Check the type of '{name}'",
                                node_ids=[node.id],
                            )
                        )

    def _check_references(self, nodes: list[NodeSpec], result: ValidationResult) -> None:
        known = {n.id for n in nodes} | {n.label for n in nodes}
        for node in nodes:
            unknown: list[str] = []
            for text in _iter_config_strings(node.config):
                for path in extract_variables(text):
                    identifier = path.split(".", 1)[0]
                    if identifier not in known and identifier not in unknown:
                        unknown.append(identifier)
            if unknown:
                result.add(
                    _warning(
                        f"unknown_reference_{node.id}",
                        "unknown_reference",
                        f"Node '{node.label}' references unknown node(s): {', '.join(unknown)}",
                        "Check the spelling of the node id or label in the template; "
                        "unresolved templates are passed through verbatim",
                        node_ids=[node.id],
                    )
                )

    @staticmethod
    def _count_components(node_ids: list[str], adjacency: dict[str, list[str]]) -> int:
        neighbours: dict[str, set[str]] = {node_id: set() for node_id in node_ids}
        for source, targets in adjacency.items():
            for target in targets:
                neighbours[source].add(target)
                neighbours[target].add(source)

        seen: set[str] = set()
        components = 0
        for node_id in node_ids:
            if node_id in seen:
                continue
            components += 1
            frontier = [node_id]
            while frontier:
                current = frontier.pop()
                if current in seen:
                    continue
                seen.add(current)
                frontier.extend(neighbours[current] - seen)
        return components


def summary(result: ValidationResult) -> str:
    """Human-readable validation report."""
    stats = result.stats
    lines = [
        "✓ Workflow is valid" if result.is_valid else "❌ Workflow is invalid",
        f"   Nodes: {stats.get('total_nodes', 0)} "
        f"(inputs: {stats.get('input_nodes', 0)}, outputs: {stats.get('output_nodes', 0)})",
        f"   Edges: {stats.get('total_edges', 0)}",
    ]
    if result.errors:
        lines.append(f"Errors ({len(result.errors)}):")
        for issue in result.errors:
            lines.append(f"   • {issue.message}")
            if issue.suggestion:
                lines.append(f"     → {issue.suggestion}")
    if result.warnings:
        lines.append(f"Warnings ({len(result.warnings)}):")
        for issue in result.warnings:
            lines.append(f"   • {issue.message}")
            if issue.suggestion:
                lines.append(f"     → {issue.suggestion}")
    return "\n".join(lines)
