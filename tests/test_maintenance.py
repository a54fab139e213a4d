"""Tests for rename, move, promote, reindex, sync and the health check."""

from __future__ import annotations

from pathlib import Path

import pytest

from memkeep.errors import NotFoundError, ValidationError
from memkeep.graph.structure import Graph, GraphEdge, GraphNode, graph_path, load_graph, save_graph
from memkeep.memory.index import index_path, load_index, remove_from_index
from memkeep.memory.maintenance import (
    HealthIssue,
    calculate_health_score,
    check_health,
    move_memory,
    promote_memory,
    reindex_memory,
    rename_memory,
    sync_store,
)
from memkeep.memory.store import MemoryStore
from memkeep.search.embedding import HashEmbeddingProvider, load_embedding_cache
from memkeep.types import Scope


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory")


def _node_ids(store: MemoryStore) -> list[str]:
    return [n.id for n in load_graph(store.root).nodes]


class TestRename:
    def test_rename_updates_everything(self, store: MemoryStore):
        old = store.write("learning", "Old name", "body").id
        other = store.write("hub", "Index", "links", links=[old]).id
        result = rename_memory(store, old, "learning-new-name")

        assert result.edges_updated == 1
        assert not (store.root / "permanent" / f"{old}.md").exists()
        memory = store.read("learning-new-name")
        assert memory.frontmatter.id == "learning-new-name"
        assert memory.content == "body"
        assert "learning-new-name" in load_index(store.root)
        assert old not in load_index(store.root)
        assert load_graph(store.root).edges == (GraphEdge(other, "learning-new-name"),)

    def test_rename_moves_embedding(self, tmp_path: Path):
        store = MemoryStore(tmp_path / "memory", embedder=HashEmbeddingProvider(16))
        old = store.write("learning", "Old name", "body text").id
        rename_memory(store, old, "learning-renamed")
        assert set(load_embedding_cache(store.root).memories) == {"learning-renamed"}

    def test_rename_to_existing_id(self, store: MemoryStore):
        a = store.write("learning", "A", "body").id
        b = store.write("learning", "B", "body").id
        with pytest.raises(ValidationError, match="already exists"):
            rename_memory(store, a, b)

    def test_rename_to_invalid_slug(self, store: MemoryStore):
        a = store.write("learning", "A", "body").id
        with pytest.raises(ValidationError):
            rename_memory(store, a, "Not A Slug")

    def test_rename_same_id(self, store: MemoryStore):
        a = store.write("learning", "A", "body").id
        with pytest.raises(ValidationError):
            rename_memory(store, a, a)

    def test_rename_missing(self, store: MemoryStore):
        with pytest.raises(NotFoundError):
            rename_memory(store, "learning-nope", "learning-other")


class TestMove:
    def test_move_between_roots(self, tmp_path: Path):
        source = MemoryStore(tmp_path / "a", Scope.GLOBAL)
        target = MemoryStore(tmp_path / "b", Scope.PROJECT)
        memory_id = source.write("decision", "Use queues", "body").id
        neighbour = source.write("learning", "Queues are slow", "body", links=[memory_id]).id

        result = move_memory(source, target, memory_id)

        assert not (tmp_path / "a" / "permanent" / f"{memory_id}.md").exists()
        moved = target.read(memory_id)
        assert moved.frontmatter.scope == "project"
        assert target.load_index().get(memory_id).scope == "project"
        assert memory_id not in source.load_index()
        assert _node_ids(source) == [neighbour]
        assert load_graph(source.root).edges == ()
        assert _node_ids(target) == [memory_id]
        assert result.embedding_transferred is False

    def test_move_same_root(self, store: MemoryStore):
        memory_id = store.write("learning", "A", "body").id
        with pytest.raises(ValidationError, match="same"):
            move_memory(store, MemoryStore(store.root), memory_id)

    def test_move_onto_existing(self, tmp_path: Path):
        source = MemoryStore(tmp_path / "a")
        target = MemoryStore(tmp_path / "b")
        memory_id = source.write("learning", "Twin", "one").id
        target.write("learning", "Twin", "two")
        with pytest.raises(ValidationError, match="already exists"):
            move_memory(source, target, memory_id)
        assert source.read(memory_id).content == "one"


class TestPromote:
    def test_promote_renames_prefix(self, store: MemoryStore):
        memory_id = store.write("learning", "Watch the cache", "body").id
        result = promote_memory(store, memory_id, "gotcha")
        assert result.new_id == "gotcha-watch-the-cache"
        assert result.file_moved is False
        memory = store.read("gotcha-watch-the-cache")
        assert memory.type == "gotcha"
        assert load_index(store.root).get("gotcha-watch-the-cache").type == "gotcha"

    def test_breadcrumb_moves_to_permanent(self, store: MemoryStore):
        memory_id = store.write("breadcrumb", "Trail", "body").id
        assert (store.root / "temporary" / f"{memory_id}.md").exists()
        result = promote_memory(store, memory_id, "learning")
        assert result.file_moved is True
        assert (store.root / "permanent" / "learning-trail.md").exists()
        assert not (store.root / "temporary" / f"{memory_id}.md").exists()

    def test_same_type_is_unchanged(self, store: MemoryStore):
        memory_id = store.write("learning", "A", "body").id
        assert promote_memory(store, memory_id, "learning").changed is False

    def test_invalid_type(self, store: MemoryStore):
        memory_id = store.write("learning", "A", "body").id
        with pytest.raises(ValidationError):
            promote_memory(store, memory_id, "wisdom")

    def test_keeps_id_when_renamed_id_is_taken(self, store: MemoryStore):
        memory_id = store.write("learning", "Same", "body").id
        store.write("gotcha", "Same", "body")
        result = promote_memory(store, memory_id, "gotcha")
        assert result.new_id is None
        assert store.read(memory_id).type == "gotcha"


class TestReindexAndSync:
    def test_reindex_restores_entry_and_node(self, store: MemoryStore):
        memory_id = store.write("learning", "A", "body").id
        remove_from_index(store.root, memory_id)
        save_graph(store.root, Graph())
        result = reindex_memory(store, memory_id)
        assert result.added_to_index and result.added_to_graph
        assert memory_id in load_index(store.root)

    def test_reindex_missing_file(self, store: MemoryStore):
        with pytest.raises(NotFoundError, match="checked permanent/ and temporary/"):
            reindex_memory(store, "learning-ghost")

    def test_sync_reconciles(self, store: MemoryStore):
        kept = store.write("learning", "Kept", "body").id
        gone = store.write("learning", "Gone", "body").id
        (store.root / "permanent" / f"{gone}.md").unlink()
        (store.root / "permanent" / "hub-manual.md").write_text(
            "---\ntitle: Manual\ntype: hub\n---\n\nby hand\n", encoding="utf-8"
        )
        graph = load_graph(store.root)
        save_graph(
            store.root,
            Graph(nodes=graph.nodes, edges=(GraphEdge(kept, "missing-node"),)),
        )

        report = sync_store(store)

        assert report.added_to_index == ["hub-manual"]
        assert report.added_to_graph == ["hub-manual"]
        assert report.removed_from_index == [gone]
        assert report.removed_ghost_nodes == [gone]
        assert report.removed_orphan_edges == 1
        assert sorted(load_index(store.root).ids()) == sorted([kept, "hub-manual"])
        assert sorted(_node_ids(store)) == sorted([kept, "hub-manual"])
        assert sync_store(store).changed is False

    def test_sync_dry_run_writes_nothing(self, store: MemoryStore):
        store.write("learning", "Kept", "body")
        save_graph(store.root, Graph(nodes=(GraphNode("ghost", "learning"),)))
        report = sync_store(store, dry_run=True)
        assert report.dry_run
        assert report.removed_ghost_nodes == ["ghost"]
        assert _node_ids(store) == ["ghost"]

    def test_sync_reports_unparseable(self, store: MemoryStore):
        (store.root / "permanent" / "learning-bad.md").write_text("nope", encoding="utf-8")
        report = sync_store(store)
        assert report.errors and "learning-bad.md" in report.errors[0]


def _issue_types(report) -> list[str]:
    return [issue.type for issue in report.issues]


class TestHealth:
    def test_linked_store_is_healthy(self, store: MemoryStore):
        kept = store.write("learning", "Kept", "body").id
        store.write("hub", "Index", "links", links=[kept])
        report = check_health(store)
        assert report.status == "healthy"
        assert report.score == 100
        assert report.issues == []
        assert (report.total_memories, report.total_nodes, report.total_edges) == (2, 2, 1)
        assert report.connectivity_ratio == pytest.approx(1.0)
        assert report.timestamp

    def test_empty_store_is_missing_files(self, store: MemoryStore):
        report = check_health(store)
        assert _issue_types(report) == ["missing_index", "missing_graph"]
        assert report.score == 40
        assert report.status == "critical"

    def test_unindexed_file_and_ghost_node(self, store: MemoryStore):
        kept = store.write("learning", "Kept", "body").id
        hub = store.write("hub", "Index", "links", links=[kept]).id
        remove_from_index(store.root, hub)

        report = check_health(store)
        issues = {issue.type: issue for issue in report.issues}
        assert set(issues) == {"ghost_nodes", "orphan_files"}
        assert issues["ghost_nodes"].details == [hub]
        assert issues["orphan_files"].details == [hub]
        assert report.score == 90

    def test_indexed_memory_without_node(self, store: MemoryStore):
        kept = store.write("learning", "Kept", "body").id
        hub = store.write("hub", "Index", "links", links=[kept]).id
        graph = load_graph(store.root)
        save_graph(store.root, Graph(nodes=tuple(n for n in graph.nodes if n.id != kept)))

        report = check_health(store)
        issues = {issue.type: issue for issue in report.issues}
        assert issues["sync_mismatch"].details == [kept]
        assert issues["orphaned_nodes"].details == [hub]
        assert report.score == 87
        assert report.status == "warning"

    def test_corrupt_index_skips_file_comparison(self, store: MemoryStore):
        store.write("learning", "Kept", "body")
        index_path(store.root).write_text("not json", encoding="utf-8")
        report = check_health(store)
        assert "corrupt_index" in _issue_types(report)
        assert "orphan_files" not in _issue_types(report)

    def test_low_connectivity(self, store: MemoryStore):
        for n in range(6):
            store.write("learning", f"Loose {n}", "body")
        report = check_health(store)
        assert report.orphaned_nodes == 6
        assert report.connectivity_ratio == 0.0
        assert "low_connectivity" in _issue_types(report)
        assert report.score == 72

    def test_writes_nothing(self, store: MemoryStore):
        kept = store.write("learning", "Kept", "body").id
        hub = store.write("hub", "Index", "links", links=[kept]).id
        remove_from_index(store.root, hub)
        before = (index_path(store.root).read_bytes(), graph_path(store.root).read_bytes())
        check_health(store)
        after = (index_path(store.root).read_bytes(), graph_path(store.root).read_bytes())
        assert before == after

    def test_orphan_penalty_is_capped(self):
        issues = [HealthIssue("orphaned_nodes", 20, "warning"), HealthIssue("ghost_nodes", 2, "warning")]
        assert calculate_health_score(issues) == 60
