"""Read-only graph algorithms: traversal, paths, components and impact."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field

from memkeep.graph.structure import Graph


@dataclass
class AdjacencyList:
    outbound: dict[str, list[str]] = field(default_factory=dict)
    inbound: dict[str, list[str]] = field(default_factory=dict)
    # undirected view, used for connectivity
    neighbours: dict[str, set[str]] = field(default_factory=dict)


@dataclass
class TraversalResult:
    visited: list[str]
    depths: dict[str, int]


@dataclass
class ImpactReport:
    node_id: str
    broken_edges: int
    orphaned_nodes: list[str]


def build_adjacency_list(graph: Graph) -> AdjacencyList:
    adjacency = AdjacencyList()
    for node in graph.nodes:
        adjacency.outbound.setdefault(node.id, [])
        adjacency.inbound.setdefault(node.id, [])
        adjacency.neighbours.setdefault(node.id, set())
    for edge in graph.edges:
        adjacency.outbound.setdefault(edge.source, []).append(edge.target)
        adjacency.inbound.setdefault(edge.target, []).append(edge.source)
        adjacency.neighbours.setdefault(edge.source, set()).add(edge.target)
        adjacency.neighbours.setdefault(edge.target, set()).add(edge.source)
    return adjacency


def bfs_traversal(graph: Graph, start: str, max_depth: float = math.inf) -> TraversalResult:
    """Breadth-first walk along outbound edges.

    ``start`` is always visited at depth 0, whether or not it is a node.
    """
    adjacency = build_adjacency_list(graph)
    visited: list[str] = []
    depths: dict[str, int] = {}
    queue: deque[tuple[str, int]] = deque([(start, 0)])
    while queue:
        node_id, depth = queue.popleft()
        if node_id in depths or depth > max_depth:
            continue
        depths[node_id] = depth
        visited.append(node_id)
        for target in adjacency.outbound.get(node_id, []):
            if target not in depths:
                queue.append((target, depth + 1))
    return TraversalResult(visited, depths)


def dfs_traversal(graph: Graph, start: str, max_depth: float = math.inf) -> TraversalResult:
    """Depth-first walk along outbound edges, in edge order.

    Iterative, so long chains do not hit the recursion limit.
    """
    adjacency = build_adjacency_list(graph)
    visited: list[str] = []
    depths: dict[str, int] = {}
    stack: list[tuple[str, int]] = [(start, 0)]
    while stack:
        node_id, depth = stack.pop()
        if node_id in depths or depth > max_depth:
            continue
        depths[node_id] = depth
        visited.append(node_id)
        for target in reversed(adjacency.outbound.get(node_id, [])):
            if target not in depths:
                stack.append((target, depth + 1))
    return TraversalResult(visited, depths)


def find_reachable(graph: Graph, start: str) -> list[str]:
    return bfs_traversal(graph, start).visited


def find_predecessors(graph: Graph, target: str) -> list[str]:
    """Every id that can reach ``target``, including ``target`` itself."""
    adjacency = build_adjacency_list(graph)
    visited: list[str] = []
    seen: set[str] = set()
    queue: deque[str] = deque([target])
    while queue:
        node_id = queue.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        visited.append(node_id)
        queue.extend(s for s in adjacency.inbound.get(node_id, []) if s not in seen)
    return visited


def find_shortest_path(graph: Graph, source: str, target: str) -> list[str] | None:
    """Fewest-edge directed path from ``source`` to ``target``, or None."""
    if source == target:
        return [source]
    adjacency = build_adjacency_list(graph)
    parents: dict[str, str | None] = {source: None}
    queue: deque[str] = deque([source])
    while queue:
        node_id = queue.popleft()
        for nxt in adjacency.outbound.get(node_id, []):
            if nxt in parents:
                continue
            parents[nxt] = node_id
            if nxt == target:
                path = [nxt]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return path[::-1]
            queue.append(nxt)
    return None


def get_subgraph(graph: Graph, start: str, max_depth: float) -> Graph:
    """Nodes within ``max_depth`` outbound hops of ``start`` and the edges among them."""
    keep = set(bfs_traversal(graph, start, max_depth).visited)
    return Graph(
        version=graph.version,
        nodes=tuple(n for n in graph.nodes if n.id in keep),
        edges=tuple(e for e in graph.edges if e.source in keep and e.target in keep),
    )


def find_connected_components(graph: Graph) -> list[list[str]]:
    """Partition nodes into weakly connected components, in node order."""
    adjacency = build_adjacency_list(graph)
    seen: set[str] = set()
    components: list[list[str]] = []
    for node in graph.nodes:
        if node.id in seen:
            continue
        component: list[str] = []
        queue: deque[str] = deque([node.id])
        seen.add(node.id)
        while queue:
            node_id = queue.popleft()
            component.append(node_id)
            for other in sorted(adjacency.neighbours.get(node_id, ())):
                if other not in seen:
                    seen.add(other)
                    queue.append(other)
        components.append(component)
    return components


def calculate_impact(graph: Graph, node_id: str) -> ImpactReport:
    """What removing ``node_id`` would break.

    ``broken_edges`` counts edges touching the node. ``orphaned_nodes`` are
    the nodes downstream of it that nothing else in the graph could still
    reach once it is gone.
    """
    broken = sum(1 for e in graph.edges if e.source == node_id or e.target == node_id)

    downstream = [n for n in find_reachable(graph, node_id) if n != node_id]
    if not downstream:
        return ImpactReport(node_id, broken, [])

    # Walk the graph without node_id, seeded from everything outside its downstream set
    downstream_set = set(downstream)
    adjacency = build_adjacency_list(graph)
    still_reached: set[str] = set()
    queue: deque[str] = deque(
        n.id for n in graph.nodes if n.id != node_id and n.id not in downstream_set
    )
    while queue:
        current = queue.popleft()
        for nxt in adjacency.outbound.get(current, []):
            if nxt == node_id or nxt in still_reached:
                continue
            if nxt in downstream_set:
                still_reached.add(nxt)
                queue.append(nxt)

    orphaned = [n for n in downstream if n not in still_reached]
    return ImpactReport(node_id, broken, orphaned)
