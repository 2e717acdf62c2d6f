from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from uuid import uuid4

ROOT_NODE_ID = "root"


class GraphStructureError(RuntimeError):
    """Raised when a plan violates the graph's structural contract."""


class DuplicateNodeError(GraphStructureError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Duplicate node id: {node_id}")
        self.node_id = node_id


class DanglingEdgeError(GraphStructureError):
    def __init__(self, source_id: str, target_id: str) -> None:
        super().__init__(f"Edge references unknown node: {source_id} -> {target_id}")
        self.source_id = source_id
        self.target_id = target_id


class CyclicPlanError(GraphStructureError):
    """Raised when planner output contains a dependency cycle."""


@dataclass(frozen=True, slots=True)
class Node:
    id: str
    name: str
    context: str


@dataclass(frozen=True, slots=True)
class Edge:
    """`target_id` depends on `source_id`."""

    source_id: str
    target_id: str


@dataclass(frozen=True, slots=True)
class Graph:
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...] = ()
    graph_id: str = field(default_factory=lambda: uuid4().hex[:12])

    @property
    def root(self) -> Node:
        return self.nodes[0]

    @property
    def node_ids(self) -> frozenset[str]:
        return frozenset(node.id for node in self.nodes)

    def task_nodes(self) -> tuple[Node, ...]:
        return tuple(node for node in self.nodes if node.id != ROOT_NODE_ID)

    def to_dict(self) -> dict:
        return {
            "graph_id": self.graph_id,
            "nodes": [
                {"id": node.id, "name": node.name, "context": node.context}
                for node in self.nodes
            ],
            "edges": [
                {"sId": edge.source_id, "tId": edge.target_id} for edge in self.edges
            ],
        }


def root_node(goal: str) -> Node:
    return Node(
        id=ROOT_NODE_ID,
        name="Plan",
        context=f"Plan initial strategy to help achieve your goal: {goal}",
    )


def create_graph(root: Node, *, graph_id: str | None = None) -> Graph:
    if graph_id is None:
        return Graph(nodes=(root,))
    return Graph(nodes=(root,), graph_id=graph_id)


def add_nodes(graph: Graph, nodes: Iterable[Node]) -> Graph:
    known = set(graph.node_ids)
    appended: list[Node] = []
    for node in nodes:
        if node.id in known:
            raise DuplicateNodeError(node.id)
        known.add(node.id)
        appended.append(node)
    if not appended:
        return graph
    return Graph(nodes=(*graph.nodes, *appended), edges=graph.edges, graph_id=graph.graph_id)


def add_edges(graph: Graph, edges: Iterable[Edge]) -> Graph:
    known = graph.node_ids
    existing = set(graph.edges)
    appended: list[Edge] = []
    for edge in edges:
        if edge.source_id not in known or edge.target_id not in known:
            raise DanglingEdgeError(edge.source_id, edge.target_id)
        if edge in existing:
            continue
        existing.add(edge)
        appended.append(edge)
    if not appended:
        return graph
    return Graph(nodes=graph.nodes, edges=(*graph.edges, *appended), graph_id=graph.graph_id)


def nodes_with_no_incoming_edge(graph: Graph) -> list[Node]:
    targets = {edge.target_id for edge in graph.edges}
    return [
        node for node in graph.nodes if node.id != ROOT_NODE_ID and node.id not in targets
    ]


def dependencies_of(graph: Graph, node_id: str) -> list[str]:
    return [edge.source_id for edge in graph.edges if edge.target_id == node_id]


def topological_order(nodes: Iterable[Node], edges: Iterable[Edge]) -> list[Node]:
    """Order nodes so every edge source precedes its target.

    Sources outside `nodes` are treated as already satisfied. Ties keep the
    authored order.
    """
    ordered_nodes = list(nodes)
    by_id = {node.id: node for node in ordered_nodes}
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for node in ordered_nodes:
        sorter.add(node.id)
    for edge in edges:
        if edge.source_id in by_id and edge.target_id in by_id:
            sorter.add(edge.target_id, edge.source_id)

    position = {node.id: index for index, node in enumerate(ordered_nodes)}
    try:
        sorter.prepare()
    except CycleError as exc:
        cycle = " -> ".join(str(item) for item in exc.args[1]) if len(exc.args) > 1 else ""
        raise CyclicPlanError(f"Plan contains a dependency cycle: {cycle}") from exc

    result: list[Node] = []
    while sorter.is_active():
        batch = sorted(sorter.get_ready(), key=lambda node_id: position[node_id])
        for node_id in batch:
            result.append(by_id[node_id])
        sorter.done(*batch)
    return result
