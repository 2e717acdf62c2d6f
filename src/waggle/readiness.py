from __future__ import annotations

from collections.abc import Collection

from waggle.graph import ROOT_NODE_ID, Graph, Node, dependencies_of


def ready(
    graph: Graph,
    completed_ids: Collection[str],
    scheduled_ids: Collection[str],
    *,
    settled_ids: Collection[str] | None = None,
) -> list[Node]:
    """Nodes whose dependencies are all the root or already done.

    When `settled_ids` is given, only those nodes are eligible: the planner
    may still add incoming edges to the others.
    """
    result: list[Node] = []
    for node in graph.task_nodes():
        if node.id in completed_ids or node.id in scheduled_ids:
            continue
        if settled_ids is not None and node.id not in settled_ids:
            continue
        if all(
            source_id == ROOT_NODE_ID or source_id in completed_ids
            for source_id in dependencies_of(graph, node.id)
        ):
            result.append(node)
    return result
