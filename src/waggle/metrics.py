from __future__ import annotations

from typing import Any

from waggle.graph import Graph, topological_order


def critical_path_length(graph: Graph) -> int:
    """Longest root-to-node chain, counted in edges."""
    incoming: dict[str, list[str]] = {}
    for edge in graph.edges:
        incoming.setdefault(edge.target_id, []).append(edge.source_id)

    depth: dict[str, int] = {}
    for node in topological_order(graph.nodes, graph.edges):
        depth[node.id] = max(
            (depth[source_id] + 1 for source_id in incoming.get(node.id, [])), default=0
        )
    return max(depth.values(), default=0)


def speedup_factor(graph: Graph) -> float:
    """Task count over critical path length.

    The root planning node is not counted, so a three task chain reports
    1.0 rather than 4 / 3.
    """
    path_length = critical_path_length(graph)
    if path_length == 0:
        return 0.0
    return round(len(graph.task_nodes()) / path_length, 2)


def summarize(graph: Graph) -> dict[str, Any]:
    return {
        "nodes": len(graph.task_nodes()),
        "edges": len(graph.edges),
        "critical_path_length": critical_path_length(graph),
        "speedup_factor": speedup_factor(graph),
    }
