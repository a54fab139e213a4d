"""Maintenance operations that restructure stored memories.

rename, move (between scope roots), promote (change type), reindex (one
file), sync (reconcile files, index, graph and embedding cache) and a
read-only health check.

These raise on failure like the single-item store methods; the bulk
engine turns failures into per-item reports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memkeep.errors import NotFoundError, ValidationError
from memkeep.graph.structure import (
    Graph,
    add_node,
    find_orphaned_nodes,
    get_node,
    graph_path,
    has_node,
    load_graph,
    mutate_graph,
    remove_dangling_edges,
    remove_nodes,
    rename_node,
)
from memkeep.memory.frontmatter import serialize_memory
from memkeep.memory.fsutil import atomic_write_text, list_markdown_files, now_iso
from memkeep.memory.index import (
    IndexState,
    add_to_index,
    batch_add_to_index,
    batch_remove_from_index,
    entry_from_file,
    inspect_index,
    load_index,
    remove_from_index,
)
from memkeep.memory.slug import is_valid_slug, parse_id
from memkeep.search.embedding import (
    load_embedding_cache,
    pop_embedding,
    purge_embeddings,
    put_embedding,
)
from memkeep.types import MemoryType, parse_memory_type, subdirectory_for

if TYPE_CHECKING:
    from memkeep.memory.store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RenameResult:
    old_id: str
    new_id: str
    path: str
    edges_updated: int = 0


@dataclass
class MoveResult:
    id: str
    source_path: str
    target_path: str
    embedding_transferred: bool = False


@dataclass
class PromoteResult:
    id: str
    from_type: str
    to_type: str
    new_id: str | None = None
    file_moved: bool = False
    changed: bool = True


@dataclass
class ReindexResult:
    id: str
    path: str
    added_to_index: bool = False
    added_to_graph: bool = False


@dataclass
class SyncReport:
    added_to_graph: list[str] = field(default_factory=list)
    added_to_index: list[str] = field(default_factory=list)
    removed_ghost_nodes: list[str] = field(default_factory=list)
    removed_orphan_edges: int = 0
    removed_from_index: list[str] = field(default_factory=list)
    removed_orphan_embeddings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(
            self.added_to_graph
            or self.added_to_index
            or self.removed_ghost_nodes
            or self.removed_orphan_edges
            or self.removed_from_index
            or self.removed_orphan_embeddings
        )


# ── Rename ────────────────────────────────────────────────────


def rename_memory(store: MemoryStore, old_id: str, new_id: str) -> RenameResult:
    """Give a memory a new id: file name, header, index entry, graph node and edges."""
    memory = store.read(old_id)
    store._check_id(new_id)
    if old_id == new_id:
        raise ValidationError("New id is the same as the old id", field="id")
    if not is_valid_slug(new_id):
        raise ValidationError(f"Invalid memory id: {new_id!r}", field="id")
    new_path = memory.path.with_name(f"{new_id}.md")
    if store._id_taken(new_id):
        raise ValidationError(f"Target already exists: {new_id}", field="id")

    fm = memory.frontmatter
    meta = dict(fm.meta)
    if meta.get("id") == old_id:
        meta["id"] = new_id
    fm = fm.with_changes(id=new_id, meta=meta, updated=now_iso())
    atomic_write_text(new_path, serialize_memory(fm, memory.content))
    memory.path.unlink()

    edges_updated = 0

    def _rename(graph: Graph) -> Graph:
        nonlocal edges_updated
        edges_updated = sum(1 for e in graph.edges if old_id in (e.source, e.target))
        if not has_node(graph, old_id):
            return add_node(graph, new_id, fm.type)
        return rename_node(graph, old_id, new_id)

    mutate_graph(store.root, _rename, timeout=store.lock_timeout)
    remove_from_index(store.root, old_id, timeout=store.lock_timeout)
    add_to_index(store.root, store.entry_for(new_id, fm, new_path), timeout=store.lock_timeout)

    entry = pop_embedding(store.root, old_id, timeout=store.lock_timeout)
    if entry is not None:
        put_embedding(store.root, new_id, entry, timeout=store.lock_timeout)

    logger.info("Renamed memory %s -> %s (%d edges updated)", old_id, new_id, edges_updated)
    return RenameResult(old_id, new_id, str(new_path), edges_updated)


# ── Move between scopes ───────────────────────────────────────


def move_memory(source: MemoryStore, target: MemoryStore, memory_id: str) -> MoveResult:
    """Move a memory from one scope root to another.

    The header's scope becomes the target store's scope. The node leaves
    the source graph with its edges (edges do not cross roots) and joins
    the target graph unconnected. A cached embedding travels with it.
    """
    if source.root.resolve() == target.root.resolve():
        raise ValidationError("Source and target scopes are the same", field="scope")
    memory = source.read(memory_id)
    subdir = memory.path.parent.name
    target_path = target.root / subdir / f"{memory_id}.md"
    if target_path.exists() or memory_id in load_index(target.root):
        raise ValidationError(f"Target already exists: {target_path}", field="id")

    fm = memory.frontmatter.with_changes(scope=target.scope, updated=now_iso())
    atomic_write_text(target_path, serialize_memory(fm, memory.content))
    memory.path.unlink()

    mutate_graph(
        source.root, lambda g: remove_nodes(g, [memory_id]), timeout=source.lock_timeout
    )
    mutate_graph(
        target.root, lambda g: add_node(g, memory_id, fm.type), timeout=target.lock_timeout
    )
    remove_from_index(source.root, memory_id, timeout=source.lock_timeout)
    add_to_index(
        target.root, target.entry_for(memory_id, fm, target_path), timeout=target.lock_timeout
    )

    transferred = False
    entry = pop_embedding(source.root, memory_id, timeout=source.lock_timeout)
    if entry is not None:
        put_embedding(target.root, memory_id, entry, timeout=target.lock_timeout)
        transferred = True

    logger.info("Moved memory %s from %s to %s", memory_id, source.scope, target.scope)
    return MoveResult(memory_id, str(memory.path), str(target_path), transferred)


# ── Promote (change type) ─────────────────────────────────────


def promote_memory(
    store: MemoryStore, memory_id: str, target_type: MemoryType | str
) -> PromoteResult:
    """Change a memory's type.

    The file moves between ``permanent/`` and ``temporary/`` when the new
    type lives elsewhere, and the id is renamed when its type prefix no
    longer matches (``learning-foo`` promoted to gotcha becomes ``gotcha-foo``).
    """
    new_type = parse_memory_type(target_type)
    if new_type is None:
        raise ValidationError(f"Invalid memory type: {target_type}", field="type")
    memory = store.read(memory_id)
    from_type = memory.type
    if from_type == new_type.value:
        return PromoteResult(memory_id, from_type, new_type.value, changed=False)

    fm = memory.frontmatter.with_changes(type=new_type.value, updated=now_iso())
    new_path = store.root / subdirectory_for(new_type.value) / f"{memory_id}.md"
    file_moved = new_path != memory.path
    if file_moved and new_path.exists():
        raise ValidationError(f"Target already exists: {new_path}", field="id")

    atomic_write_text(new_path, serialize_memory(fm, memory.content))
    if file_moved:
        memory.path.unlink()
    mutate_graph(
        store.root, lambda g: add_node(g, memory_id, new_type.value), timeout=store.lock_timeout
    )
    add_to_index(store.root, store.entry_for(memory_id, fm, new_path), timeout=store.lock_timeout)

    result = PromoteResult(memory_id, from_type, new_type.value, file_moved=file_moved)
    parsed = parse_id(memory_id)
    if parsed is not None and parsed[0] is not new_type:
        candidate = f"{new_type.value}-{parsed[1]}"
        try:
            rename_memory(store, memory_id, candidate)
            result.new_id = candidate
        except ValidationError as exc:
            logger.warning("Promoted %s but kept its id: %s", memory_id, exc)

    logger.info("Promoted memory %s: %s -> %s", memory_id, from_type, new_type.value)
    return result


# ── Reindex & sync ────────────────────────────────────────────


def reindex_memory(store: MemoryStore, memory_id: str) -> ReindexResult:
    """Add one on-disk memory back into the index and graph."""
    store._check_id(memory_id)
    path = None
    for sub in ("permanent", "temporary"):
        candidate = store.root / sub / f"{memory_id}.md"
        if candidate.is_file():
            path = candidate
            break
    if path is None:
        raise NotFoundError(
            memory_id, f"File not found: {memory_id}.md (checked permanent/ and temporary/)"
        )

    entry = entry_from_file(path, store.root, store.scope)
    result = ReindexResult(memory_id, str(path))
    if memory_id not in load_index(store.root):
        add_to_index(store.root, entry, timeout=store.lock_timeout)
        result.added_to_index = True

    def _ensure_node(graph: Graph) -> Graph:
        if has_node(graph, memory_id):
            return graph
        result.added_to_graph = True
        return add_node(graph, memory_id, entry.type)

    mutate_graph(store.root, _ensure_node, timeout=store.lock_timeout)
    logger.info(
        "Reindexed %s (index: %s, graph: %s)", memory_id, result.added_to_index, result.added_to_graph
    )
    return result


def sync_store(store: MemoryStore, dry_run: bool = False) -> SyncReport:
    """Reconcile index, graph and embedding cache with the files on disk.

    Files are the source of truth: anything indexed, graphed or embedded
    without a file is dropped, and files missing from the index or graph
    are added. Unparseable files are reported in ``errors`` and left alone.
    """
    report = SyncReport(dry_run=dry_run)
    on_disk = {}
    for path in list_markdown_files(store.root):
        on_disk.setdefault(path.stem, path)

    parsed_entries = {}
    for memory_id, path in on_disk.items():
        try:
            parsed_entries[memory_id] = entry_from_file(path, store.root, store.scope)
        except (ValidationError, OSError, UnicodeDecodeError) as exc:
            report.errors.append(f"{path.name}: {exc}")

    index = load_index(store.root)
    indexed = set(index.ids())
    report.added_to_index = [i for i in parsed_entries if i not in indexed]
    report.removed_from_index = [i for i in index.ids() if i not in on_disk]

    def _reconcile(graph: Graph) -> Graph:
        original = graph
        for memory_id, entry in parsed_entries.items():
            node = get_node(graph, memory_id)
            if node is None:
                report.added_to_graph.append(memory_id)
                graph = add_node(graph, memory_id, entry.type)
            elif not node.type:
                graph = add_node(graph, memory_id, entry.type)
        report.removed_ghost_nodes = [n.id for n in graph.nodes if n.id not in on_disk]
        graph = remove_nodes(graph, report.removed_ghost_nodes)
        cleaned = remove_dangling_edges(graph)
        report.removed_orphan_edges = len(graph.edges) - len(cleaned.edges)
        return original if dry_run else cleaned

    mutate_graph(store.root, _reconcile, timeout=store.lock_timeout)

    cache = load_embedding_cache(store.root)
    report.removed_orphan_embeddings = [i for i in cache.memories if i not in on_disk]

    if not dry_run:
        batch_add_to_index(
            store.root,
            [parsed_entries[i] for i in report.added_to_index],
            timeout=store.lock_timeout,
        )
        batch_remove_from_index(store.root, report.removed_from_index, timeout=store.lock_timeout)
        purge_embeddings(store.root, report.removed_orphan_embeddings, timeout=store.lock_timeout)

    if report.errors:
        logger.warning("Sync skipped %d unreadable files in %s", len(report.errors), store.root)
    logger.info(
        "Sync %s%s: +%d index, -%d index, +%d graph, -%d ghost nodes, -%d edges, -%d embeddings",
        store.root,
        " (dry run)" if dry_run else "",
        len(report.added_to_index),
        len(report.removed_from_index),
        len(report.added_to_graph),
        len(report.removed_ghost_nodes),
        report.removed_orphan_edges,
        len(report.removed_orphan_embeddings),
    )
    return report


# ── Health ────────────────────────────────────────────────────

# points deducted per occurrence; orphaned nodes are capped
ISSUE_PENALTIES = {
    "missing_index": 30,
    "corrupt_index": 30,
    "missing_graph": 30,
    "orphaned_nodes": 3,
    "sync_mismatch": 10,
    "ghost_nodes": 5,
    "orphan_files": 5,
    "low_connectivity": 10,
}
ORPHANED_NODES_MAX_PENALTY = 30
MAX_ISSUE_DETAILS = 10


@dataclass
class HealthIssue:
    type: str
    count: int
    severity: str  # info | warning | error
    details: list[str] = field(default_factory=list)


@dataclass
class HealthReport:
    status: str  # healthy | warning | critical
    score: int
    total_memories: int
    total_nodes: int
    total_edges: int
    orphaned_nodes: int
    connectivity_ratio: float
    issues: list[HealthIssue] = field(default_factory=list)
    timestamp: str = ""


def calculate_health_score(issues: list[HealthIssue]) -> int:
    score = 100
    for issue in issues:
        penalty = ISSUE_PENALTIES.get(issue.type, 5)
        if issue.type == "orphaned_nodes":
            score -= min(issue.count * penalty, ORPHANED_NODES_MAX_PENALTY)
        else:
            score -= penalty * issue.count
    return max(0, score)


def _status_for(score: int) -> str:
    if score >= 90:
        return "healthy"
    if score >= 70:
        return "warning"
    return "critical"


def check_health(store: MemoryStore) -> HealthReport:
    """Score how consistent the files, index and graph of one root are.

    Nothing is written; ``sync_store`` repairs most of what this reports.
    """
    issues: list[HealthIssue] = []

    def _issue(kind: str, ids: list[str], severity: str = "warning") -> None:
        if ids:
            issues.append(HealthIssue(kind, len(ids), severity, ids[:MAX_ISSUE_DETAILS]))

    loaded = inspect_index(store.root)
    if loaded.state is IndexState.MISSING:
        issues.append(HealthIssue("missing_index", 1, "error"))
    elif loaded.needs_rebuild:
        issues.append(HealthIssue("corrupt_index", 1, "error", [loaded.error or loaded.state.value]))
    if not graph_path(store.root).exists():
        issues.append(HealthIssue("missing_graph", 1, "error"))

    graph = load_graph(store.root)
    index_ids = loaded.index.ids()
    indexed = set(index_ids)
    node_ids = {n.id for n in graph.nodes}
    on_disk = {path.stem for path in list_markdown_files(store.root)}

    orphaned = find_orphaned_nodes(graph)
    _issue("orphaned_nodes", orphaned)
    _issue("sync_mismatch", [i for i in index_ids if i not in node_ids])
    _issue("ghost_nodes", [n.id for n in graph.nodes if n.id not in indexed])
    if loaded.state is IndexState.OK:
        _issue("orphan_files", sorted(on_disk - indexed))

    total_nodes = len(graph.nodes)
    connectivity = (total_nodes - len(orphaned)) / total_nodes if total_nodes else 1.0
    if connectivity < 0.5 and total_nodes > 5:
        issues.append(HealthIssue("low_connectivity", 1, "warning"))

    score = calculate_health_score(issues)
    report = HealthReport(
        status=_status_for(score),
        score=score,
        total_memories=len(index_ids),
        total_nodes=total_nodes,
        total_edges=len(graph.edges),
        orphaned_nodes=len(orphaned),
        connectivity_ratio=connectivity,
        issues=issues,
        timestamp=now_iso(),
    )
    logger.debug("Health check %s: score %d (%s)", store.root, score, report.status)
    return report
