import pytest

from waggle.graph import (
    ROOT_NODE_ID,
    CyclicPlanError,
    DanglingEdgeError,
    DuplicateNodeError,
    Edge,
    Node,
    add_edges,
    add_nodes,
    create_graph,
    dependencies_of,
    nodes_with_no_incoming_edge,
    root_node,
    topological_order,
)


def _node(node_id: str) -> Node:
    return Node(id=node_id, name=f"Task {node_id}", context=f"Do {node_id}")


def test_create_graph_holds_only_root() -> None:
    graph = create_graph(root_node("ship the release"))

    assert [node.id for node in graph.nodes] == [ROOT_NODE_ID]
    assert graph.edges == ()
    assert graph.task_nodes() == ()
    assert "ship the release" in graph.root.context


def test_add_nodes_and_edges_are_pure() -> None:
    base = create_graph(root_node("goal"), graph_id="g1")
    grown = add_nodes(base, [_node("a"), _node("b")])
    linked = add_edges(grown, [Edge(ROOT_NODE_ID, "a"), Edge("a", "b")])

    assert len(base.nodes) == 1
    assert len(grown.edges) == 0
    assert [node.id for node in linked.nodes] == [ROOT_NODE_ID, "a", "b"]
    assert linked.graph_id == "g1"
    assert dependencies_of(linked, "b") == ["a"]


def test_add_nodes_rejects_duplicates() -> None:
    graph = add_nodes(create_graph(root_node("goal")), [_node("a")])

    with pytest.raises(DuplicateNodeError) as excinfo:
        add_nodes(graph, [_node("a")])
    assert excinfo.value.node_id == "a"

    with pytest.raises(DuplicateNodeError):
        add_nodes(graph, [_node("b"), _node("b")])


def test_add_edges_rejects_unknown_endpoints_and_skips_repeats() -> None:
    graph = add_nodes(create_graph(root_node("goal")), [_node("a")])

    with pytest.raises(DanglingEdgeError) as excinfo:
        add_edges(graph, [Edge("a", "missing")])
    assert excinfo.value.target_id == "missing"

    once = add_edges(graph, [Edge(ROOT_NODE_ID, "a")])
    twice = add_edges(once, [Edge(ROOT_NODE_ID, "a")])
    assert twice is once


def test_nodes_with_no_incoming_edge_ignores_root() -> None:
    graph = add_nodes(create_graph(root_node("goal")), [_node("a"), _node("b"), _node("c")])
    graph = add_edges(graph, [Edge("a", "b")])

    assert [node.id for node in nodes_with_no_incoming_edge(graph)] == ["a", "c"]


def test_topological_order_keeps_authored_order_within_layer() -> None:
    nodes = [_node("late"), _node("x"), _node("early"), _node("y")]
    edges = [Edge("early", "late"), Edge("outside", "x")]

    ordered = [node.id for node in topological_order(nodes, edges)]

    assert ordered == ["x", "early", "y", "late"]


def test_topological_order_raises_on_cycle() -> None:
    with pytest.raises(CyclicPlanError):
        topological_order([_node("a"), _node("b")], [Edge("a", "b"), Edge("b", "a")])


def test_graph_to_dict_uses_wire_edge_keys() -> None:
    graph = add_nodes(create_graph(root_node("goal"), graph_id="abc"), [_node("a")])
    graph = add_edges(graph, [Edge(ROOT_NODE_ID, "a")])

    payload = graph.to_dict()

    assert payload["graph_id"] == "abc"
    assert payload["edges"] == [{"sId": ROOT_NODE_ID, "tId": "a"}]
    assert payload["nodes"][1] == {"id": "a", "name": "Task a", "context": "Do a"}
