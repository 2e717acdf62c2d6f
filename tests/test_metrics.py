from waggle.graph import ROOT_NODE_ID, Edge, Node, add_edges, add_nodes, create_graph, root_node
from waggle.metrics import critical_path_length, speedup_factor, summarize


def _graph(node_ids: list[str], edges: list[tuple[str, str]]):
    graph = create_graph(root_node("goal"))
    graph = add_nodes(graph, [Node(id=i, name=i, context=i) for i in node_ids])
    return add_edges(graph, [Edge(source, target) for source, target in edges])


def test_empty_plan_has_no_speedup() -> None:
    graph = create_graph(root_node("goal"))

    assert critical_path_length(graph) == 0
    assert speedup_factor(graph) == 0.0


def test_chain_has_no_parallelism() -> None:
    graph = _graph(["a", "b", "c"], [(ROOT_NODE_ID, "a"), ("a", "b"), ("b", "c")])

    assert critical_path_length(graph) == 3
    assert speedup_factor(graph) == 1.0


def test_wide_plan_speedup() -> None:
    graph = _graph(
        ["a", "b", "c", "d"],
        [(ROOT_NODE_ID, "a"), (ROOT_NODE_ID, "b"), (ROOT_NODE_ID, "c"), ("a", "d"), ("c", "d")],
    )

    assert critical_path_length(graph) == 2
    assert speedup_factor(graph) == 2.0
    assert summarize(graph) == {
        "nodes": 4,
        "edges": 5,
        "critical_path_length": 2,
        "speedup_factor": 2.0,
    }


def test_speedup_is_rounded() -> None:
    graph = _graph(["a", "b", "c"], [(ROOT_NODE_ID, "a"), ("a", "b"), ("b", "c")])
    graph = add_edges(
        add_nodes(graph, [Node(id="d", name="d", context="d")]), [Edge(ROOT_NODE_ID, "d")]
    )

    assert speedup_factor(graph) == 1.33


def test_critical_path_ignores_edge_insertion_order() -> None:
    graph = _graph(
        ["a", "b", "c"],
        [(ROOT_NODE_ID, "a"), (ROOT_NODE_ID, "b"), (ROOT_NODE_ID, "c"), ("b", "c"), ("a", "b")],
    )

    assert critical_path_length(graph) == 3
    assert speedup_factor(graph) == 1.0
