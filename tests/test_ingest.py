import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from waggle.graph import (
    ROOT_NODE_ID,
    CyclicPlanError,
    DanglingEdgeError,
    DuplicateNodeError,
    Edge,
    Graph,
    Node,
    create_graph,
    root_node,
)
from waggle.ingest import PlanIngester, PlanningError, PlanSection, parse_plan_document

LEVELLED_PLAN = """\
"1":
  - id: 0
    name: Research
    context: Collect sources on the topic
  - id: 1
    name: Outline
    context: Sketch the report structure
  - id: c
    name: Review research
    context: Check sources and outline for gaps
"2":
  - parents: ["1"]
  - id: 0
    name: Write
    context: Draft the report from the outline
"""

FLAT_PLAN = """\
nodes:
  - id: a
    name: Fetch data
    context: Download the quarterly numbers
  - id: b
    name: Analyse
    context: Compute growth per region
edges:
  - sId: a
    tId: b
"""


def _ingester(**kwargs: Any) -> PlanIngester:
    return PlanIngester(create_graph(root_node("write a report")), **kwargs)


def _edges(graph: Graph) -> list[tuple[str, str]]:
    return [(edge.source_id, edge.target_id) for edge in graph.edges]


def _section_node_ids(sections: list[PlanSection]) -> list[str]:
    return [node.id for section in sections for node in section.nodes]


def _assert_reachable(graph: Graph) -> None:
    targets = {edge.target_id for edge in graph.edges}
    for node in graph.task_nodes():
        assert node.id in targets


def test_parse_plan_document_tolerates_truncation() -> None:
    assert parse_plan_document("") is None
    assert parse_plan_document('{"nodes": [{"id": "a", "na') is None

    sections = parse_plan_document(FLAT_PLAN)
    assert sections is not None
    assert _section_node_ids(sections) == ["a", "b"]
    assert sections[-1].edges == [Edge("a", "b")]
    assert not any(section.self_contained for section in sections)


def test_parse_drops_incomplete_entries() -> None:
    text = """\
nodes:
  - id: a
    name: Fetch
    context: Download
  - id: b
    name: Analyse
  - name: Nameless
    context: missing id
edges:
  - source: a
    target: b
  - source: a
"""
    sections = parse_plan_document(text)

    assert sections is not None
    assert _section_node_ids(sections) == ["a"]
    assert sections[-1].edges == [Edge("a", "b")]


def test_levelled_plan_translates_ids_and_review_edges() -> None:
    sections = parse_plan_document(LEVELLED_PLAN)

    assert sections is not None
    first, second = sections
    assert [node.id for node in first.nodes] == ["1-0", "1-1", "1-c"]
    assert first.edges == [Edge("1-0", "1-c"), Edge("1-1", "1-c")]
    assert [node.id for node in second.nodes] == ["2-0"]
    assert second.edges == [Edge("1-c", "2-0")]


def test_levelled_parent_without_review_links_work_nodes() -> None:
    text = """\
- alpha:
    - id: x
      name: X
      context: do x
    - id: y
      name: Y
      context: do y
- beta:
    - parents: [alpha]
    - id: z
      name: Z
      context: do z
"""
    sections = parse_plan_document(text)

    assert sections is not None
    assert sections[1].edges == [Edge("alpha-x", "beta-z"), Edge("alpha-y", "beta-z")]


def test_streamed_levelled_plan_publishes_sealed_levels() -> None:
    published: list[Graph] = []
    offered: list[Node] = []
    events: list[dict[str, Any]] = []
    ingester = _ingester(
        on_publish=published.append,
        on_first_task=lambda node, graph: offered.append(node),
        event_hook=events.append,
    )

    for line in LEVELLED_PLAN.splitlines(keepends=True):
        ingester.feed(line)
    assert len(published) == 1
    assert [node.id for node in published[0].task_nodes()] == ["1-0", "1-1", "1-c"]

    final = ingester.finish()

    assert len(published) == 2
    assert final is published[-1]
    assert _edges(final) == [
        (ROOT_NODE_ID, "1-0"),
        (ROOT_NODE_ID, "1-1"),
        ("1-0", "1-c"),
        ("1-1", "1-c"),
        ("1-c", "2-0"),
    ]
    assert [node.id for node in offered] == ["1-0"]
    assert "plan_first_task_offered" in [event["event"] for event in events]


def test_snapshots_grow_monotonically_and_stay_reachable() -> None:
    published: list[Graph] = []
    ingester = _ingester(on_publish=published.append)

    text = LEVELLED_PLAN
    for index in range(0, len(text), 7):
        ingester.feed(text[index : index + 7])
    ingester.finish()

    assert published
    for previous, current in zip(published, published[1:]):
        assert len(current.nodes) >= len(previous.nodes)
        assert len(current.edges) >= len(previous.edges)
    for snapshot in published:
        _assert_reachable(snapshot)


def test_streamed_flat_plan_publishes_nodes_before_the_stream_ends() -> None:
    published: list[Graph] = []
    offered: list[Node] = []
    ingester = _ingester(
        on_publish=published.append,
        on_first_task=lambda node, graph: offered.append(node),
    )

    for line in FLAT_PLAN.splitlines(keepends=True):
        ingester.feed(line)

    assert published
    assert [node.id for node in published[0].task_nodes()] == ["a"]
    assert _edges(published[0]) == [(ROOT_NODE_ID, "a")]
    assert [node.id for node in offered] == ["a"]
    assert ingester.settled_ids == frozenset()

    graph = ingester.finish()

    assert _edges(graph) == [(ROOT_NODE_ID, "a"), (ROOT_NODE_ID, "b"), ("a", "b")]
    assert ingester.settled_ids == graph.node_ids
    for previous, current in zip(published, published[1:]):
        assert len(current.nodes) >= len(previous.nodes)
        assert len(current.edges) >= len(previous.edges)


def test_levelled_nodes_are_settled_once_their_level_seals() -> None:
    ingester = _ingester()

    for line in LEVELLED_PLAN.splitlines(keepends=True):
        ingester.feed(line)

    assert ingester.settled_ids == {"1-0", "1-1", "1-c"}


def test_late_edges_that_close_a_cycle_are_rejected() -> None:
    ingester = _ingester()
    lines = [
        "nodes:\n",
        "  - {id: a, name: A, context: one}\n",
        "  - {id: b, name: B, context: two}\n",
        "edges:\n",
        "  - {sId: a, tId: b}\n",
        "  - {sId: b, tId: a}\n",
    ]
    for line in lines:
        ingester.feed(line)

    with pytest.raises(CyclicPlanError):
        ingester.finish()


def test_json_plan_with_root_edge() -> None:
    ingester = _ingester()
    ingester.feed('{"nodes": [{"id": "a", "name": "A", "context": "do a"}],\n')
    ingester.feed(' "edges": [{"sId": "root", "tId": "a"}]}')

    graph = ingester.finish()

    assert _edges(graph) == [(ROOT_NODE_ID, "a")]


def test_duplicate_node_ids_are_rejected() -> None:
    ingester = _ingester()
    ingester.feed(
        "nodes:\n"
        "  - {id: a, name: A, context: one}\n"
        "  - {id: a, name: A again, context: two}\n"
    )

    with pytest.raises(DuplicateNodeError):
        ingester.finish()


def test_dangling_edges_are_rejected_at_finish() -> None:
    ingester = _ingester()
    ingester.feed(
        "nodes:\n"
        "  - {id: a, name: A, context: one}\n"
        "edges:\n"
        "  - {sId: a, tId: ghost}\n"
    )

    with pytest.raises(DanglingEdgeError) as excinfo:
        ingester.finish()
    assert excinfo.value.target_id == "ghost"


def test_cycles_are_rejected() -> None:
    ingester = _ingester()
    ingester.feed(
        "nodes:\n"
        "  - {id: a, name: A, context: one}\n"
        "  - {id: b, name: B, context: two}\n"
        "edges:\n"
        "  - {sId: a, tId: b}\n"
        "  - {sId: b, tId: a}\n"
    )

    with pytest.raises(CyclicPlanError):
        ingester.finish()


def test_unparseable_stream_reports_event_and_keeps_graph() -> None:
    events: list[dict[str, Any]] = []
    ingester = _ingester(event_hook=events.append)
    ingester.feed("nodes: [ {id: a\n")

    graph = ingester.finish()

    assert graph.task_nodes() == ()
    assert events[-1]["event"] == "plan_parse_failed"


def test_ingest_consumes_async_chunks() -> None:
    async def _chunks() -> AsyncIterator[str]:
        for line in FLAT_PLAN.splitlines(keepends=True):
            await asyncio.sleep(0)
            yield line

    graph = asyncio.run(_ingester().ingest(_chunks()))

    assert [node.id for node in graph.task_nodes()] == ["a", "b"]


def test_ingest_stops_when_cancelled() -> None:
    cancel_event: asyncio.Event | None = None

    async def _chunks() -> AsyncIterator[str]:
        assert cancel_event is not None
        yield "nodes:\n"
        cancel_event.set()
        yield "  - {id: a, name: A, context: one}\n"

    async def _run() -> None:
        nonlocal cancel_event
        cancel_event = asyncio.Event()
        await _ingester().ingest(_chunks(), cancel=cancel_event)

    with pytest.raises(PlanningError, match="Signal aborted"):
        asyncio.run(_run())
