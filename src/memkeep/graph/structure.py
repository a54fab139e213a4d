"""Graph value type and its pure mutators.

A Graph is immutable: nodes and edges are tuples of frozen dataclasses,
and every mutator returns a new Graph instead of changing its input.
Callers compose several mutations and save once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterable

from memkeep.errors import GraphIntegrityError
from memkeep.memory.fsutil import (
    DEFAULT_LOCK_TIMEOUT,
    JsonState,
    read_json,
    storage_lock,
    write_json,
)
from memkeep.types import EdgeType

logger = logging.getLogger(__name__)

GRAPH_VERSION = 1
GRAPH_FILENAME = "graph.json"
DEFAULT_RELATION = EdgeType.RELATES_TO.value


@dataclass(frozen=True)
class GraphNode:
    id: str
    type: str = ""


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    relation: str = DEFAULT_RELATION


@dataclass(frozen=True)
class Graph:
    version: int = GRAPH_VERSION
    nodes: tuple[GraphNode, ...] = field(default_factory=tuple)
    edges: tuple[GraphEdge, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "nodes": [{"id": n.id, "type": n.type} for n in self.nodes],
            "edges": [
                {"source": e.source, "target": e.target, "relation": e.relation}
                for e in self.edges
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Graph:
        """Build a graph from a document, skipping entries that lack required fields."""
        raw_nodes = data.get("nodes")
        raw_edges = data.get("edges")
        nodes: dict[str, GraphNode] = {}
        for raw in raw_nodes if isinstance(raw_nodes, list) else []:
            if isinstance(raw, dict) and isinstance(raw.get("id"), str) and raw["id"]:
                nodes[raw["id"]] = GraphNode(raw["id"], str(raw.get("type") or ""))

        edges: list[GraphEdge] = []
        seen: set[GraphEdge] = set()
        for raw in raw_edges if isinstance(raw_edges, list) else []:
            if not isinstance(raw, dict):
                continue
            source, target = raw.get("source"), raw.get("target")
            if not isinstance(source, str) or not isinstance(target, str):
                continue
            # older documents call the relation "label"
            relation = raw.get("relation") or raw.get("label") or DEFAULT_RELATION
            edge = GraphEdge(source, target, str(relation))
            if edge not in seen:
                seen.add(edge)
                edges.append(edge)

        version = data.get("version")
        return cls(
            version=version if isinstance(version, int) else GRAPH_VERSION,
            nodes=tuple(nodes.values()),
            edges=tuple(edges),
        )


def create_graph() -> Graph:
    return Graph()


# ── Persistence ───────────────────────────────────────────────


def graph_path(root: Path) -> Path:
    return root / GRAPH_FILENAME


def load_graph(root: Path) -> Graph:
    """Load ``graph.json``; a missing or unusable document yields an empty graph."""
    path = graph_path(root)
    result = read_json(path)
    if result.state is JsonState.MISSING:
        return create_graph()
    if result.state is not JsonState.OK:
        logger.warning(
            "Failed to load graph %s, starting fresh: %s", path, result.error or result.state.value
        )
        return create_graph()
    if not isinstance(result.data, dict):
        logger.warning("Graph %s is not an object, starting fresh", path)
        return create_graph()
    return Graph.from_dict(result.data)


def save_graph(root: Path, graph: Graph) -> None:
    write_json(graph_path(root), graph.to_dict())
    logger.debug(
        "Saved graph %s (%d nodes, %d edges)", graph_path(root), len(graph.nodes), len(graph.edges)
    )


def mutate_graph(
    root: Path,
    change: Callable[[Graph], Graph],
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Graph:
    """Load, apply ``change`` and save once, under the storage lock.

    The document is rewritten only if ``change`` returned a different graph.
    """
    with storage_lock(root, timeout):
        graph = load_graph(root)
        updated = change(graph)
        if updated != graph:
            save_graph(root, updated)
    return updated


# ── Nodes ─────────────────────────────────────────────────────


def add_node(graph: Graph, node_id: str, node_type: str = "") -> Graph:
    """Add a node, or update the type of an existing one in place."""
    node = GraphNode(node_id, node_type)
    for i, existing in enumerate(graph.nodes):
        if existing.id == node_id:
            if existing == node:
                return graph
            return replace(graph, nodes=graph.nodes[:i] + (node,) + graph.nodes[i + 1 :])
    return replace(graph, nodes=graph.nodes + (node,))


def remove_node(graph: Graph, node_id: str) -> Graph:
    """Remove a node and every edge that touches it."""
    return remove_nodes(graph, [node_id])


def remove_nodes(graph: Graph, node_ids: Iterable[str]) -> Graph:
    doomed = set(node_ids)
    return replace(
        graph,
        nodes=tuple(n for n in graph.nodes if n.id not in doomed),
        edges=tuple(e for e in graph.edges if e.source not in doomed and e.target not in doomed),
    )


def rename_node(graph: Graph, old_id: str, new_id: str) -> Graph:
    """Give a node a new id, rewriting every incident edge."""

    def swap(node_id: str) -> str:
        return new_id if node_id == old_id else node_id

    return replace(
        graph,
        nodes=tuple(replace(n, id=new_id) if n.id == old_id else n for n in graph.nodes),
        edges=tuple(
            dict.fromkeys(
                replace(e, source=swap(e.source), target=swap(e.target)) for e in graph.edges
            )
        ),
    )


def get_node(graph: Graph, node_id: str) -> GraphNode | None:
    for node in graph.nodes:
        if node.id == node_id:
            return node
    return None


def has_node(graph: Graph, node_id: str) -> bool:
    return get_node(graph, node_id) is not None


def get_all_nodes(graph: Graph, node_type: str | None = None) -> list[GraphNode]:
    if node_type is None:
        return list(graph.nodes)
    return [n for n in graph.nodes if n.type == node_type]


# ── Edges ─────────────────────────────────────────────────────


def add_edge(
    graph: Graph,
    source: str,
    target: str,
    relation: str | None = None,
) -> Graph:
    """Add a directed edge.

    Raises GraphIntegrityError when either endpoint is missing or the edge
    would point at its own source. Re-adding an existing
    (source, target, relation) triple returns ``graph`` unchanged.
    """
    relation = relation or DEFAULT_RELATION
    node_ids = {n.id for n in graph.nodes}
    if source not in node_ids:
        raise GraphIntegrityError(f"Source node not found: {source}")
    if target not in node_ids:
        raise GraphIntegrityError(f"Target node not found: {target}")
    if source == target:
        raise GraphIntegrityError(f"Cannot create self-referencing edge on {source}")

    edge = GraphEdge(source, target, relation)
    if edge in graph.edges:
        return graph
    return replace(graph, edges=graph.edges + (edge,))


def remove_edge(
    graph: Graph,
    source: str,
    target: str,
    relation: str | None = None,
) -> Graph:
    """Remove one labelled edge, or every source->target edge when ``relation`` is None."""
    edges = tuple(
        e
        for e in graph.edges
        if not (
            e.source == source
            and e.target == target
            and (relation is None or e.relation == relation)
        )
    )
    if len(edges) == len(graph.edges):
        return graph
    return replace(graph, edges=edges)


def has_edge(graph: Graph, source: str, target: str, relation: str | None = None) -> bool:
    return any(
        e.source == source and e.target == target and (relation is None or e.relation == relation)
        for e in graph.edges
    )


def get_outbound_edges(graph: Graph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.source == node_id]


def get_inbound_edges(graph: Graph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.target == node_id]


def get_edges_for_node(graph: Graph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.source == node_id or e.target == node_id]


def get_neighbours(graph: Graph, node_id: str) -> list[str]:
    """Ids connected to ``node_id`` in either direction, in edge order."""
    neighbours: dict[str, None] = {}
    for edge in graph.edges:
        if edge.source == node_id:
            neighbours.setdefault(edge.target)
        if edge.target == node_id:
            neighbours.setdefault(edge.source)
    return list(neighbours)


def get_node_degree(graph: Graph, node_id: str) -> int:
    return len(get_edges_for_node(graph, node_id))


def find_orphaned_nodes(graph: Graph) -> list[str]:
    """Nodes with no edges at all."""
    connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}
    return [n.id for n in graph.nodes if n.id not in connected]


def bulk_add_edges(
    graph: Graph,
    edges: Iterable[tuple[str, str] | tuple[str, str, str]],
) -> Graph:
    """Add many edges, skipping any that would violate graph integrity."""
    result = graph
    for edge in edges:
        try:
            result = add_edge(result, *edge)
        except GraphIntegrityError as exc:
            logger.debug("Skipping edge %s: %s", edge, exc)
    return result


def remove_dangling_edges(graph: Graph) -> Graph:
    """Drop edges whose source or target is not a node."""
    node_ids = {n.id for n in graph.nodes}
    edges = tuple(e for e in graph.edges if e.source in node_ids and e.target in node_ids)
    if len(edges) == len(graph.edges):
        return graph
    return replace(graph, edges=edges)
