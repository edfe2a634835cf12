"""
Edge Protocol - How nodes connect in a graph.

Edges define:
1. Source and target nodes
2. Optional sub-port handles for multi-output nodes

An edge is a dependency: the target cannot start until the source has
reached a terminal state. Whether the target then runs or is skipped is
decided by the engine (fail-fast dependencies, conditional predicates).

GraphModel is the immutable snapshot of nodes and edges for one run.
"""

import heapq
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from nodeflow.graph.node import NodeSpec


class EdgeSpec(BaseModel):
    """
    An edge between two nodes.

    Examples:
        EdgeSpec(id="e1", source="scraper", target="summarizer")

        # Editor payloads use camelCase handles
        EdgeSpec.model_validate(
            {"id": "e2", "source": "router", "target": "slack", "sourceHandle": "yes"}
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class GraphModel(BaseModel):
    """
    Immutable snapshot of a workflow graph for one run.

        GraphModel(
            id="research-flow",
            name="Research and notify",
            nodes=[NodeSpec(...), ...],
            edges=[EdgeSpec(...), ...],
        )
    """

    id: str = "workflow"
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    edges: list[EdgeSpec] = Field(default_factory=list, description="All edge specifications")

    model_config = ConfigDict(extra="allow", frozen=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphModel":
        """Build a graph from a plain dict (editor export or workflow file)."""
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: str | Path) -> "GraphModel":
        """Load a workflow document from a JSON file."""
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if "id" not in data:
            data["id"] = Path(path).stem
        return cls.from_dict(data)

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        """Distinct source ids of the edges entering ``node_id``, in edge order."""
        return list(dict.fromkeys(e.source for e in self.get_incoming_edges(node_id)))

    def successors(self, node_id: str) -> list[str]:
        """Distinct target ids of the edges leaving ``node_id``, in edge order."""
        return list(dict.fromkeys(e.target for e in self.get_outgoing_edges(node_id)))

    def label_to_id(self) -> dict[str, str]:
        """Alias table used by templates. First node wins on duplicate labels."""
        aliases: dict[str, str] = {}
        for node in self.nodes:
            aliases.setdefault(node.label, node.id)
        return aliases

    def topological_order(self) -> list[str]:
        """
        Node ids in dependency order (Kahn's algorithm).

        Ties are broken by position in ``nodes`` so the order is stable.
        Edges pointing at unknown nodes are ignored. Nodes on a cycle never
        become ready and are left out; the validator rejects such graphs
        before they reach the engine.
        """
        position = {node.id: i for i, node in enumerate(self.nodes)}
        in_degree = dict.fromkeys(position, 0)
        children: dict[str, list[str]] = {node_id: [] for node_id in position}

        seen: set[tuple[str, str]] = set()
        for edge in self.edges:
            pair = (edge.source, edge.target)
            if edge.source not in position or edge.target not in position or pair in seen:
                continue
            seen.add(pair)
            children[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        ready = [(i, node_id) for node_id, i in position.items() if in_degree[node_id] == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, current = heapq.heappop(ready)
            order.append(current)
            for child in children[current]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        return order

    def has_independent_branches(self) -> bool:
        """True if some pair of nodes has no path between them in either direction."""
        order = self.topological_order()
        reach: dict[str, set[str]] = {}
        for node_id in reversed(order):
            below: set[str] = set()
            for child in self.successors(node_id):
                below.add(child)
                below |= reach.get(child, set())
            reach[node_id] = below

        for i, a in enumerate(order):
            for b in order[i + 1 :]:
                if b not in reach[a] and a not in reach[b]:
                    return True
        return False
