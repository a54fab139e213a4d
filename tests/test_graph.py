"""Tests for the graph value type and its mutators."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from memkeep.errors import GraphIntegrityError
from memkeep.graph.structure import (
    Graph,
    GraphEdge,
    add_edge,
    add_node,
    bulk_add_edges,
    create_graph,
    find_orphaned_nodes,
    get_inbound_edges,
    get_neighbours,
    get_node_degree,
    get_outbound_edges,
    graph_path,
    has_edge,
    load_graph,
    mutate_graph,
    remove_dangling_edges,
    remove_edge,
    remove_node,
    rename_node,
    save_graph,
)


def _graph(*ids: str) -> Graph:
    graph = create_graph()
    for node_id in ids:
        graph = add_node(graph, node_id, "learning")
    return graph


class TestNodes:
    def test_add_node_returns_new_graph(self):
        empty = create_graph()
        graph = add_node(empty, "a", "hub")
        assert empty.nodes == ()
        assert [n.id for n in graph.nodes] == ["a"]

    def test_add_existing_node_updates_type(self):
        graph = add_node(_graph("a"), "a", "decision")
        assert len(graph.nodes) == 1
        assert graph.nodes[0].type == "decision"

    def test_readd_identical_node_is_noop(self):
        graph = _graph("a")
        assert add_node(graph, "a", "learning") is graph

    def test_remove_node_cascades_edges(self):
        graph = add_edge(_graph("a", "b", "c"), "a", "b")
        graph = add_edge(graph, "c", "b")
        graph = add_edge(graph, "a", "c")
        result = remove_node(graph, "b")
        assert [n.id for n in result.nodes] == ["a", "c"]
        assert result.edges == (GraphEdge("a", "c"),)
        assert len(graph.edges) == 3

    def test_rename_node_rewrites_edges(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        renamed = rename_node(graph, "b", "z")
        assert [n.id for n in renamed.nodes] == ["a", "z"]
        assert renamed.edges == (GraphEdge("a", "z"),)


class TestEdges:
    def test_add_edge_default_relation(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        assert graph.edges[0].relation == "relates-to"

    def test_duplicate_edge_is_ignored(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        again = add_edge(graph, "a", "b")
        assert again is graph
        assert len(again.edges) == 1

    def test_same_pair_with_different_relation(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        graph = add_edge(graph, "a", "b", "supersedes")
        assert len(graph.edges) == 2

    def test_missing_target(self):
        with pytest.raises(GraphIntegrityError, match="Target node not found: zz"):
            add_edge(_graph("a"), "a", "zz")

    def test_missing_source(self):
        with pytest.raises(GraphIntegrityError, match="Source node not found"):
            add_edge(_graph("b"), "a", "b")

    def test_self_reference(self):
        with pytest.raises(GraphIntegrityError, match="self-referencing"):
            add_edge(_graph("a"), "a", "a")

    def test_input_not_mutated(self):
        graph = _graph("a", "b")
        snapshot = graph.to_dict()
        add_edge(graph, "a", "b")
        remove_node(graph, "a")
        assert graph.to_dict() == snapshot

    def test_remove_edge_by_relation(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        graph = add_edge(graph, "a", "b", "warns")
        graph = remove_edge(graph, "a", "b", "warns")
        assert [e.relation for e in graph.edges] == ["relates-to"]

    def test_remove_all_edges_between_pair(self):
        graph = add_edge(_graph("a", "b"), "a", "b")
        graph = add_edge(graph, "a", "b", "warns")
        assert remove_edge(graph, "a", "b").edges == ()

    def test_remove_missing_edge_is_noop(self):
        graph = _graph("a", "b")
        assert remove_edge(graph, "a", "b") is graph

    def test_bulk_add_skips_invalid(self):
        graph = bulk_add_edges(_graph("a", "b"), [("a", "b"), ("a", "missing"), ("b", "b")])
        assert graph.edges == (GraphEdge("a", "b"),)

    def test_queries(self):
        graph = add_edge(_graph("a", "b", "c"), "a", "b")
        graph = add_edge(graph, "c", "b")
        assert has_edge(graph, "a", "b")
        assert not has_edge(graph, "b", "a")
        assert [e.source for e in get_inbound_edges(graph, "b")] == ["a", "c"]
        assert get_outbound_edges(graph, "b") == []
        assert get_neighbours(graph, "b") == ["a", "c"]
        assert get_node_degree(graph, "b") == 2

    def test_orphans_and_dangling(self):
        graph = add_edge(_graph("a", "b", "c"), "a", "b")
        assert find_orphaned_nodes(graph) == ["c"]
        broken = Graph(nodes=graph.nodes, edges=graph.edges + (GraphEdge("a", "gone"),))
        assert remove_dangling_edges(broken).edges == (GraphEdge("a", "b"),)


class TestPersistence:
    def test_missing_file_is_empty(self, tmp_path: Path):
        assert load_graph(tmp_path) == create_graph()

    def test_corrupt_file_is_empty(self, tmp_path: Path):
        graph_path(tmp_path).write_text("{oops", encoding="utf-8")
        assert load_graph(tmp_path).nodes == ()

    def test_undecodable_bytes_are_empty(self, tmp_path: Path):
        graph_path(tmp_path).write_bytes(b'{"nodes": [\xff\xfe]}')
        assert load_graph(tmp_path) == create_graph()

    @pytest.mark.parametrize("field", ["nodes", "edges"])
    def test_wrongly_typed_collections(self, tmp_path: Path, field):
        doc = {"version": 1, "nodes": [{"id": "a"}], "edges": []}
        doc[field] = 5
        graph_path(tmp_path).write_text(json.dumps(doc), encoding="utf-8")
        graph = load_graph(tmp_path)
        assert graph.edges == ()
        assert [n.id for n in graph.nodes] == ([] if field == "nodes" else ["a"])

    def test_save_and_load(self, tmp_path: Path):
        graph = add_edge(_graph("a", "b"), "a", "b", "implements")
        save_graph(tmp_path, graph)
        assert load_graph(tmp_path) == graph

    def test_legacy_label_field(self, tmp_path: Path):
        doc = {
            "nodes": [{"id": "a"}, {"id": "b"}, {"type": "hub"}],
            "edges": [{"source": "a", "target": "b", "label": "extends"}, {"source": "a"}],
        }
        graph_path(tmp_path).write_text(json.dumps(doc), encoding="utf-8")
        graph = load_graph(tmp_path)
        assert [n.id for n in graph.nodes] == ["a", "b"]
        assert graph.edges == (GraphEdge("a", "b", "extends"),)

    def test_mutate_graph_skips_unchanged_save(self, tmp_path: Path):
        mutate_graph(tmp_path, lambda g: g)
        assert not graph_path(tmp_path).exists()
        mutate_graph(tmp_path, lambda g: add_node(g, "a"))
        assert [n.id for n in load_graph(tmp_path).nodes] == ["a"]
