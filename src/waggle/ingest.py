from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import yaml

from waggle.graph import (
    ROOT_NODE_ID,
    DanglingEdgeError,
    DuplicateNodeError,
    Edge,
    Graph,
    Node,
    add_edges,
    add_nodes,
    topological_order,
)

REVIEW_NODE_SUFFIX = "c"

PublishHook = Callable[[Graph], None]
FirstTaskHook = Callable[[Node, Graph], None]
EventHook = Callable[[dict[str, Any]], None]


class PlanningError(RuntimeError):
    """Raised when the planning stream fails or is aborted."""


class NoPlanError(PlanningError):
    def __init__(self, message: str = "No plan found") -> None:
        super().__init__(message)


@dataclass(slots=True)
class PlanSection:
    """One unit of the plan that becomes stable as a whole.

    `self_contained` sections carry every edge into their nodes, so a sealed
    one is settled. Other sections may still gain incoming edges later.
    """

    key: str
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    self_contained: bool = True


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _node_from_entry(entry: Any, *, id_prefix: str = "") -> Node | None:
    if not isinstance(entry, dict):
        return None
    node_id = _text(entry.get("id"))
    name = _text(entry.get("name"))
    context = _text(entry.get("context"))
    if not (node_id and name and context):
        return None
    return Node(id=f"{id_prefix}{node_id}", name=name, context=context)


def _edge_from_entry(entry: Any) -> Edge | None:
    if not isinstance(entry, dict):
        return None
    for source_key, target_key in (("sId", "tId"), ("source", "target"), ("sourceId", "targetId")):
        if source_key in entry or target_key in entry:
            source_id = _text(entry.get(source_key))
            target_id = _text(entry.get(target_key))
            if source_id and target_id:
                return Edge(source_id=source_id, target_id=target_id)
            return None
    return None


def _flat_sections(document: dict[str, Any]) -> list[PlanSection]:
    # One section per node entry; edges follow every node in this format.
    sections: list[PlanSection] = []
    raw_nodes = document.get("nodes")
    for entry in raw_nodes if isinstance(raw_nodes, list) else []:
        node = _node_from_entry(entry)
        if node is not None:
            sections.append(PlanSection(key=node.id, nodes=[node], self_contained=False))
    if "edges" in document:
        edge_section = PlanSection(key="edges", self_contained=False)
        raw_edges = document.get("edges")
        for entry in raw_edges if isinstance(raw_edges, list) else []:
            edge = _edge_from_entry(entry)
            if edge is not None:
                edge_section.edges.append(edge)
        sections.append(edge_section)
    return sections


def _level_items(document: dict[str, Any] | list[Any]) -> list[tuple[str, list[Any]]]:
    items: list[tuple[str, list[Any]]] = []
    if isinstance(document, dict):
        pairs = list(document.items())
    else:
        pairs = []
        for element in document:
            if isinstance(element, dict):
                pairs.extend(element.items())
    for key, value in pairs:
        if isinstance(value, list):
            items.append((str(key).strip(), value))
    return items


def _levelled_sections(document: dict[str, Any] | list[Any]) -> list[PlanSection]:
    levels = _level_items(document)
    has_review_node: dict[str, bool] = {}
    level_node_ids: dict[str, list[str]] = {}
    sections: list[PlanSection] = []

    for level, entries in levels:
        section = PlanSection(key=level)
        parents: list[str] = []
        for entry in entries:
            if isinstance(entry, dict) and "parents" in entry:
                raw_parents = entry.get("parents") or []
                if isinstance(raw_parents, list):
                    parents = [_text(parent) for parent in raw_parents if _text(parent)]
                continue
            node = _node_from_entry(entry, id_prefix=f"{level}-")
            if node is not None:
                section.nodes.append(node)

        review_id = f"{level}-{REVIEW_NODE_SUFFIX}"
        work_nodes = [node for node in section.nodes if node.id != review_id]
        has_review_node[level] = len(work_nodes) != len(section.nodes)
        level_node_ids[level] = [node.id for node in work_nodes]

        for node in section.nodes:
            if parents:
                for parent in parents:
                    if has_review_node.get(parent, True):
                        sources = [f"{parent}-{REVIEW_NODE_SUFFIX}"]
                    else:
                        sources = level_node_ids.get(parent, [])
                    for source_id in sources:
                        section.edges.append(Edge(source_id=source_id, target_id=node.id))
            if node.id != review_id and has_review_node[level]:
                section.edges.append(Edge(source_id=node.id, target_id=review_id))
        sections.append(section)
    return sections


def parse_plan_document(text: str) -> list[PlanSection] | None:
    """Parse a (possibly truncated) plan document into ordered sections.

    Returns None while the text is not yet a parseable document.
    """
    if not text.strip():
        return None
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    if isinstance(document, dict) and ("nodes" in document or "edges" in document):
        return _flat_sections(document)
    if isinstance(document, (dict, list)):
        return _levelled_sections(document)
    return None


class PlanIngester:
    """Builds a monotonically growing graph from streamed planner text."""

    def __init__(
        self,
        graph: Graph,
        *,
        on_publish: PublishHook | None = None,
        on_first_task: FirstTaskHook | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.graph = graph
        self.on_publish = on_publish
        self.on_first_task = on_first_task
        self.event_hook = event_hook
        self.finished = False
        self.settled_ids: frozenset[str] = frozenset()
        self._text = ""
        self._pending = ""
        self._chunk_count = 0
        self._first_task_offered = False

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def feed(self, chunk: str) -> Graph | None:
        """Add one chunk; returns the new snapshot when the graph grew."""
        if self.finished:
            raise PlanningError("Plan stream already finished.")
        self._chunk_count += 1
        self._pending += chunk
        line_break = self._pending.rfind("\n")
        if line_break == -1:
            return None
        self._text += self._pending[: line_break + 1]
        self._pending = self._pending[line_break + 1 :]
        return self._refresh(finished=False)

    def finish(self) -> Graph:
        if self.finished:
            return self.graph
        self._text += self._pending
        self._pending = ""
        self.finished = True
        self._refresh(finished=True)
        return self.graph

    async def ingest(
        self,
        chunks: AsyncIterator[str],
        *,
        cancel: asyncio.Event | None = None,
    ) -> Graph:
        async for chunk in chunks:
            if cancel is not None and cancel.is_set():
                raise PlanningError("Signal aborted")
            self.feed(chunk)
        if cancel is not None and cancel.is_set():
            raise PlanningError("Signal aborted")
        return self.finish()

    def _refresh(self, *, finished: bool) -> Graph | None:
        sections = parse_plan_document(self._text)
        if sections is None:
            if finished and self._text.strip():
                self._emit({"event": "plan_parse_failed", "bytes": len(self._text)})
            return None

        sealed = sections if finished else sections[:-1]
        candidate_nodes: list[Node] = []
        candidate_edges: list[Edge] = []
        seen_ids: set[str] = set()
        for section in sealed:
            for node in section.nodes:
                if node.id in seen_ids:
                    raise DuplicateNodeError(node.id)
                seen_ids.add(node.id)
                candidate_nodes.append(node)
            candidate_edges.extend(section.edges)

        snapshot = self._merge(candidate_nodes, candidate_edges, finished=finished)
        if finished:
            self.settled_ids = self.graph.node_ids
        else:
            self.settled_ids = self.graph.node_ids & {
                node.id for section in sealed if section.self_contained for node in section.nodes
            }
        if snapshot is None:
            return None
        self._emit(
            {
                "event": "plan_snapshot_published",
                "nodes": len(snapshot.nodes),
                "edges": len(snapshot.edges),
                "chunks": self._chunk_count,
                "finished": finished,
            }
        )
        if self.on_publish:
            self.on_publish(snapshot)
        self._offer_first_task(snapshot)
        return snapshot

    def _merge(
        self,
        candidate_nodes: list[Node],
        candidate_edges: list[Edge],
        *,
        finished: bool,
    ) -> Graph | None:
        known_ids = set(self.graph.node_ids)
        fresh = [node for node in candidate_nodes if node.id not in known_ids]
        fresh_ids = {node.id for node in fresh}
        incoming: dict[str, list[Edge]] = {}
        for edge in candidate_edges:
            incoming.setdefault(edge.target_id, []).append(edge)

        if finished:
            for edge in candidate_edges:
                for endpoint in (edge.source_id, edge.target_id):
                    if endpoint not in known_ids and endpoint not in fresh_ids:
                        raise DanglingEdgeError(edge.source_id, edge.target_id)

        # A node waits until every authored dependency exists.
        accepted: dict[str, Node] = {node.id: node for node in fresh}
        changed = True
        while changed:
            changed = False
            for node_id in list(accepted):
                for edge in incoming.get(node_id, []):
                    if edge.source_id not in known_ids and edge.source_id not in accepted:
                        del accepted[node_id]
                        changed = True
                        break

        batch = [node for node in fresh if node.id in accepted]
        batch_edges = [edge for edge in candidate_edges if edge.target_id in accepted]
        ordered = topological_order(batch, batch_edges)

        new_edges: list[Edge] = []
        for node in ordered:
            authored = incoming.get(node.id, [])
            if authored:
                new_edges.extend(authored)
            else:
                new_edges.append(Edge(source_id=ROOT_NODE_ID, target_id=node.id))

        # Edges into nodes that were published before the edge arrived.
        existing_edges = set(self.graph.edges)
        late_edges = [
            edge
            for edge in candidate_edges
            if edge.target_id in known_ids
            and (edge.source_id in known_ids or edge.source_id in accepted)
            and edge not in existing_edges
        ]

        updated = add_nodes(self.graph, ordered)
        updated = add_edges(updated, [*new_edges, *late_edges])
        if late_edges:
            topological_order(updated.nodes, updated.edges)
        if (
            len(updated.nodes) <= len(self.graph.nodes)
            and len(updated.edges) <= len(self.graph.edges)
        ):
            return None
        self.graph = updated
        return updated

    def _offer_first_task(self, snapshot: Graph) -> None:
        if self._first_task_offered or self.on_first_task is None:
            return
        task_nodes = snapshot.task_nodes()
        if not task_nodes:
            return
        self._first_task_offered = True
        first = task_nodes[0]
        sources = [edge.source_id for edge in snapshot.edges if edge.target_id == first.id]
        if all(source_id == ROOT_NODE_ID for source_id in sources):
            self._emit({"event": "plan_first_task_offered", "node_id": first.id})
            self.on_first_task(first, snapshot)
