"""MemoryStore: single-item operations on one storage root.

Markdown files are the source of truth. Every mutation keeps the file,
its index entry and its graph node in step: write adds all three, delete
removes all three (plus incident edges and the cached embedding).
Single-item methods raise; bulk callers collect failures per item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from memkeep.errors import GraphIntegrityError, NotFoundError, ProviderError, ValidationError
from memkeep.graph.structure import (
    Graph,
    add_edge,
    add_node,
    bulk_add_edges,
    load_graph,
    mutate_graph,
    remove_edge,
    remove_nodes,
)
from memkeep.graph.traversal import ImpactReport, calculate_impact
from memkeep.memory.frontmatter import parse_memory_file, serialize_memory
from memkeep.memory.fsutil import DEFAULT_LOCK_TIMEOUT, atomic_write_text, now_iso
from memkeep.memory.index import (
    RebuildResult,
    add_to_index,
    batch_remove_from_index,
    load_index,
    rebuild_index,
    update_in_index,
)
from memkeep.memory.slug import generate_unique_id
from memkeep.search.embedding import (
    MAX_EMBEDDING_CHARS,
    BatchEmbeddingResult,
    EmbeddingProvider,
    ProgressCallback,
    batch_generate_embeddings,
    get_embedding_for_memory,
    purge_embeddings,
)
from memkeep.search.semantic import (
    LinkSuggestions,
    SemanticMatch,
    find_duplicates,
    find_similar_to_memory,
    semantic_search,
    suggest_links,
)
from memkeep.search.similarity import DuplicatePair, LSHOptions
from memkeep.types import (
    Frontmatter,
    IndexEntry,
    Memory,
    MemoryIndex,
    MemoryType,
    Scope,
    Severity,
    parse_memory_type,
    subdirectory_for,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("created", "updated", "title")
SNIPPET_LENGTH = 150


@dataclass
class SearchResult:
    id: str
    type: str
    title: str
    score: float
    tags: list[str] = field(default_factory=list)
    scope: str | None = None
    snippet: str | None = None


@dataclass
class DeleteReport:
    deleted_ids: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)


@dataclass
class LinkReport:
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)


def keyword_score(query: str, title: str, content: str, tags: Iterable[str]) -> float:
    """Relevance of a memory to a keyword query, in [0, 1].

    Title hits weigh most (with a bonus for an exact title), then tags,
    then body text with a small bonus per extra occurrence.
    """
    q = query.lower()
    score = 0.0
    if q in title.lower():
        score += 0.5
        if title.lower() == q:
            score += 0.3
    if any(q in tag.lower() for tag in tags):
        score += 0.3
    body = content.lower()
    if q in body:
        score += 0.2
        score += min(body.count(q) * 0.02, 0.1)
    return min(score, 1.0)


def extract_snippet(content: str, query: str, max_length: int = SNIPPET_LENGTH) -> str | None:
    """A short excerpt around the first occurrence of ``query``."""
    match = content.lower().find(query.lower())
    if match == -1:
        return None
    start = max(0, match - 50)
    end = min(len(content), match + len(query) + 100)
    snippet = content[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet += "..."
    if len(snippet) > max_length:
        snippet = snippet[: max_length - 3] + "..."
    return snippet


class MemoryStore:
    """Read/write access to one storage root."""

    def __init__(
        self,
        root: Path,
        scope: Scope | str = Scope.GLOBAL,
        embedder: EmbeddingProvider | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        max_embedding_chars: int = MAX_EMBEDDING_CHARS,
        lsh_options: LSHOptions | None = None,
    ) -> None:
        self.root = root
        self.scope = Scope(scope).value
        self.embedder = embedder
        self.lock_timeout = lock_timeout
        self.max_embedding_chars = max_embedding_chars
        self.lsh_options = lsh_options or LSHOptions()
        self._ensure_initialized()

    def __repr__(self) -> str:
        return f"MemoryStore({str(self.root)!r}, scope={self.scope!r})"

    # ── 1. Initialization ─────────────────────────────────────

    def _ensure_initialized(self) -> None:
        """Ensure the memory directories exist. Idempotent."""
        for d in ("permanent", "temporary"):
            (self.root / d).mkdir(parents=True, exist_ok=True)

    # ── 2. Paths & lookup ─────────────────────────────────────

    def _check_id(self, memory_id: str) -> str:
        if not memory_id or not memory_id.strip():
            raise ValidationError("id is required", field="id")
        if "/" in memory_id or "\\" in memory_id or memory_id in (".", "..") or "\0" in memory_id:
            raise ValidationError(f"Invalid memory id: {memory_id!r}", field="id")
        return memory_id

    def _inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def _locate(self, memory_id: str, index: MemoryIndex | None = None) -> Path | None:
        """Find the file backing ``memory_id``: the indexed path first, then the type folders."""
        self._check_id(memory_id)
        entry = (index if index is not None else load_index(self.root)).get(memory_id)
        if entry is not None and entry.relative_path:
            candidate = self.root / entry.relative_path
            if not self._inside_root(candidate):
                raise ValidationError(
                    f"Indexed path for {memory_id} escapes the storage root", field="id"
                )
            if candidate.is_file():
                return candidate
        for sub in ("permanent", "temporary"):
            candidate = self.root / sub / f"{memory_id}.md"
            if candidate.is_file():
                return candidate
        return None

    def path_for(self, memory_id: str, memory_type: str) -> Path:
        return self.root / subdirectory_for(memory_type) / f"{memory_id}.md"

    def exists(self, memory_id: str) -> bool:
        return memory_id in load_index(self.root) or self._locate(memory_id) is not None

    def _id_taken(self, memory_id: str) -> bool:
        return any(
            (self.root / sub / f"{memory_id}.md").exists() for sub in ("permanent", "temporary")
        ) or memory_id in load_index(self.root)

    def entry_for(self, memory_id: str, fm: Frontmatter, path: Path) -> IndexEntry:
        return IndexEntry(
            id=memory_id,
            type=fm.type,
            title=fm.title,
            tags=list(fm.tags),
            created=fm.created or "",
            updated=fm.updated or fm.created or "",
            scope=fm.scope or self.scope,
            relative_path=path.relative_to(self.root).as_posix(),
            severity=fm.severity,
        )

    # ── 3. Write & read ───────────────────────────────────────

    def write(
        self,
        type: MemoryType | str,
        title: str,
        content: str,
        tags: Iterable[str] | None = None,
        severity: Severity | str | None = None,
        links: Iterable[str] | None = None,
        source: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Memory:
        """Create a memory: file, index entry and graph node.

        ``links`` become ``relates-to`` edges to memories already in this
        root; unknown link targets are kept in the header only.
        """
        memory_type = parse_memory_type(type)
        if memory_type is None:
            raise ValidationError(
                f"type must be one of: {', '.join(t.value for t in MemoryType)}", field="type"
            )
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title is required and must be a non-empty string", field="title")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(
                "content is required and must be a non-empty string", field="content"
            )
        if severity is not None:
            try:
                severity = Severity(severity).value
            except ValueError:
                raise ValidationError(
                    f"severity must be one of: {', '.join(s.value for s in Severity)}",
                    field="severity",
                ) from None
        clean_tags = _clean_strings(tags, "tags")
        clean_links = _clean_strings(links, "links")

        memory_id = generate_unique_id(memory_type, title, self._id_taken)
        ts = now_iso()
        fm = Frontmatter(
            id=memory_id,
            title=title.strip(),
            type=memory_type.value,
            tags=clean_tags,
            created=ts,
            updated=ts,
            scope=self.scope,
            severity=severity,
            links=clean_links,
            source=source,
            meta=dict(meta or {}),
        )
        path = self.path_for(memory_id, memory_type.value)
        atomic_write_text(path, serialize_memory(fm, content))
        add_to_index(self.root, self.entry_for(memory_id, fm, path), timeout=self.lock_timeout)

        def _add(graph: Graph) -> Graph:
            graph = add_node(graph, memory_id, memory_type.value)
            return bulk_add_edges(graph, [(memory_id, target) for target in clean_links])

        mutate_graph(self.root, _add, timeout=self.lock_timeout)
        logger.info("Wrote memory %s to %s", memory_id, path)

        memory = Memory(memory_id, fm, content.strip(), self.scope, path)
        if self.embedder is not None:
            try:
                self.refresh_embedding(memory_id, memory.content)
            except ProviderError as exc:
                logger.warning("Embedding for %s not refreshed: %s", memory_id, exc)
        return memory

    def read(self, memory_id: str) -> Memory:
        """Load a memory by id. Raises NotFoundError if no file backs it."""
        path = self._locate(memory_id)
        if path is None:
            raise NotFoundError(memory_id)
        parsed = parse_memory_file(path)
        return Memory(
            id=memory_id,
            frontmatter=parsed.frontmatter,
            content=parsed.content,
            scope=parsed.frontmatter.scope or self.scope,
            path=path,
        )

    def _rewrite(self, memory_id: str, change: Callable[[Frontmatter], Frontmatter]) -> Memory:
        """Apply a header change, bump ``updated`` and refresh the index entry."""
        memory = self.read(memory_id)
        fm = change(memory.frontmatter).with_changes(updated=now_iso())
        atomic_write_text(memory.path, serialize_memory(fm, memory.content))
        entry = self.entry_for(memory_id, fm, memory.path)
        if not update_in_index(self.root, entry, timeout=self.lock_timeout):
            add_to_index(self.root, entry, timeout=self.lock_timeout)
        memory.frontmatter = fm
        return memory

    # ── 4. Delete ─────────────────────────────────────────────

    def delete(self, memory_id: str) -> None:
        """Remove file, index entry, graph node and incident edges, and the cached embedding."""
        report = self.delete_many([memory_id])
        if report.failed:
            failure = report.failed[0]
            if failure["reason"].startswith("Memory not found"):
                raise NotFoundError(memory_id)
            raise ValidationError(failure["reason"], field="id")

    def delete_many(
        self,
        memory_ids: Iterable[str],
        on_item: Callable[[str], None] | None = None,
        index: MemoryIndex | None = None,
    ) -> DeleteReport:
        """Delete several memories with one index save and one graph save.

        ``on_item`` is called with each id before it is processed.
        """
        report = DeleteReport()
        if index is None:
            index = load_index(self.root)
        for memory_id in dict.fromkeys(memory_ids):
            if on_item:
                on_item(memory_id)
            try:
                path = self._locate(memory_id, index)
                if path is None:
                    if memory_id not in index:
                        raise NotFoundError(memory_id)
                    logger.warning("Memory %s was indexed without a file", memory_id)
                else:
                    path.unlink()
            except (NotFoundError, ValidationError, OSError) as exc:
                report.failed.append({"id": memory_id, "reason": str(exc)})
                continue
            report.deleted_ids.append(memory_id)

        if not report.deleted_ids:
            return report

        batch_remove_from_index(self.root, report.deleted_ids, timeout=self.lock_timeout)
        doomed = list(report.deleted_ids)
        mutate_graph(self.root, lambda g: remove_nodes(g, doomed), timeout=self.lock_timeout)
        try:
            purge_embeddings(self.root, doomed, timeout=self.lock_timeout)
        except OSError as exc:
            logger.warning("Could not purge embeddings for %d memories: %s", len(doomed), exc)
        logger.info("Deleted %d memories from %s", len(doomed), self.root)
        return report

    # ── 5. Tags ───────────────────────────────────────────────

    def tag(self, memory_id: str, tags: Iterable[str]) -> list[str]:
        """Add tags, keeping existing order. Returns the resulting tag list."""
        new_tags = _clean_strings(tags, "tags")
        if not new_tags:
            raise ValidationError("At least one tag is required", field="tags")

        def _add(fm: Frontmatter) -> Frontmatter:
            return fm.with_changes(tags=fm.tags + [t for t in new_tags if t not in fm.tags])

        return self._rewrite(memory_id, _add).tags

    def untag(self, memory_id: str, tags: Iterable[str]) -> list[str]:
        """Remove tags. Returns the resulting tag list."""
        doomed = set(_clean_strings(tags, "tags"))
        if not doomed:
            raise ValidationError("At least one tag is required", field="tags")
        return self._rewrite(
            memory_id, lambda fm: fm.with_changes(tags=[t for t in fm.tags if t not in doomed])
        ).tags

    # ── 6. List & keyword search ──────────────────────────────

    def list(
        self,
        memory_type: str | None = None,
        tags: Iterable[str] | None = None,
        scope: str | None = None,
        sort_by: str = "created",
        descending: bool = True,
        limit: int | None = None,
    ) -> list[IndexEntry]:
        """Index entries matching every given filter (tags are AND-ed)."""
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}", field="sort_by")
        required = set(tags or [])
        entries = [
            e
            for e in load_index(self.root).entries
            if (memory_type is None or e.type == memory_type)
            and (scope is None or e.scope == scope)
            and required.issubset(e.tags)
        ]
        if sort_by == "title":
            entries.sort(key=lambda e: e.title.lower(), reverse=descending)
        else:
            entries.sort(key=lambda e: getattr(e, sort_by), reverse=descending)
        return entries[:limit] if limit is not None else entries

    def search(
        self,
        query: str,
        memory_type: str | None = None,
        scope: str | None = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        """Keyword search over titles, tags and bodies, best match first."""
        if not query or not query.strip():
            raise ValidationError("query is required", field="query")
        query = query.strip()
        q = query.lower()
        results: list[SearchResult] = []
        for entry in self.list(memory_type=memory_type, scope=scope):
            content = ""
            path = self.root / entry.relative_path
            if path.is_file():
                try:
                    content = parse_memory_file(path).content
                except (ValidationError, OSError, UnicodeDecodeError) as exc:
                    logger.warning("Skipping unreadable memory %s: %s", entry.id, exc)
                    continue
            if not (
                q in entry.title.lower()
                or any(q in t.lower() for t in entry.tags)
                or q in content.lower()
            ):
                continue
            results.append(
                SearchResult(
                    id=entry.id,
                    type=entry.type,
                    title=entry.title,
                    score=keyword_score(query, entry.title, content, entry.tags),
                    tags=list(entry.tags),
                    scope=entry.scope,
                    snippet=extract_snippet(content, query),
                )
            )
        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug("Search %r matched %d memories", query, len(results))
        return results[:limit]

    # ── 7. Links ──────────────────────────────────────────────

    def graph(self) -> Graph:
        return load_graph(self.root)

    def link(self, source: str, target: str, relation: str | None = None) -> bool:
        """Create a directed edge between two indexed memories.

        Returns False if the edge already existed.
        """
        report = self.link_many([source], target, relation)
        if report.failed:
            reason = report.failed[0]["reason"]
            if reason.startswith("Target memory not found"):
                raise NotFoundError(target, reason)
            if reason.startswith("Source memory not found"):
                raise NotFoundError(source, reason)
            raise GraphIntegrityError(reason)
        return bool(report.created)

    def link_many(
        self,
        sources: Iterable[str],
        target: str,
        relation: str | None = None,
        on_item: Callable[[str], None] | None = None,
        index: MemoryIndex | None = None,
    ) -> LinkReport:
        """Link every source to ``target`` with one index load and one graph save.

        Pass ``index`` to reuse an index the caller has already loaded.
        """
        report = LinkReport()
        if index is None:
            index = load_index(self.root)
        entries = {entry.id: entry for entry in index.entries}
        target_entry = entries.get(target)
        sources = list(dict.fromkeys(sources))

        def _apply(graph: Graph) -> Graph:
            if target_entry is None:
                for source in sources:
                    report.failed.append(
                        {"id": source, "reason": f"Target memory not found: {target}"}
                    )
                return graph
            node_ids = {node.id for node in graph.nodes}
            if target not in node_ids:
                graph = add_node(graph, target, target_entry.type)
                node_ids.add(target)
            for source in sources:
                if on_item:
                    on_item(source)
                source_entry = entries.get(source)
                if source_entry is None:
                    report.failed.append(
                        {"id": source, "reason": f"Source memory not found: {source}"}
                    )
                    continue
                if source == target:
                    report.failed.append(
                        {"id": source, "reason": "Cannot create self-referencing link"}
                    )
                    continue
                if source not in node_ids:
                    graph = add_node(graph, source, source_entry.type)
                    node_ids.add(source)
                updated = add_edge(graph, source, target, relation)
                if updated is graph:
                    report.existing.append(source)
                else:
                    report.created.append(source)
                graph = updated
            return graph

        mutate_graph(self.root, _apply, timeout=self.lock_timeout)
        if report.created:
            logger.info("Linked %d memories to %s", len(report.created), target)
        return report

    def unlink(self, source: str, target: str, relation: str | None = None) -> bool:
        """Remove the edge(s) from ``source`` to ``target``. Returns False if none existed."""
        return bool(self.unlink_many([source], target, relation))

    def unlink_many(
        self,
        sources: Iterable[str],
        target: str,
        relation: str | None = None,
        on_item: Callable[[str], None] | None = None,
    ) -> list[str]:
        """Remove edges from each source to ``target`` in one graph save.

        Returns the sources that actually had an edge removed.
        """
        sources = list(dict.fromkeys(sources))
        removed: list[str] = []

        def _apply(graph: Graph) -> Graph:
            for source in sources:
                if on_item:
                    on_item(source)
                updated = remove_edge(graph, source, target, relation)
                if updated is not graph:
                    removed.append(source)
                graph = updated
            return graph

        mutate_graph(self.root, _apply, timeout=self.lock_timeout)
        if removed:
            logger.info("Unlinked %d memories from %s", len(removed), target)
        return removed

    def impact(self, memory_id: str) -> ImpactReport:
        return calculate_impact(self.graph(), memory_id)

    # ── 8. Index ──────────────────────────────────────────────

    def load_index(self) -> MemoryIndex:
        return load_index(self.root)

    def rebuild_index(self, force: bool = False) -> RebuildResult:
        return rebuild_index(self.root, scope=self.scope, force=force, timeout=self.lock_timeout)

    # ── 9. Embeddings & semantic search ───────────────────────

    def _require_embedder(self) -> EmbeddingProvider:
        if self.embedder is None:
            raise ValidationError("No embedding provider configured", field="embedder")
        return self.embedder

    def refresh_embedding(self, memory_id: str, content: str | None = None) -> list[float]:
        """Return the memory's embedding, regenerating it if its content changed."""
        provider = self._require_embedder()
        if content is None:
            content = self.read(memory_id).content
        return get_embedding_for_memory(
            self.root,
            memory_id,
            content,
            provider,
            max_chars=self.max_embedding_chars,
            timeout=self.lock_timeout,
        )

    def embed_all(self, on_progress: ProgressCallback | None = None) -> list[BatchEmbeddingResult]:
        """Bring the embedding cache up to date for every indexed memory."""
        provider = self._require_embedder()
        items: list[tuple[str, str]] = []
        for entry in load_index(self.root).entries:
            try:
                items.append((entry.id, self.read(entry.id).content))
            except (NotFoundError, ValidationError, OSError) as exc:
                logger.warning("Skipping %s for embedding: %s", entry.id, exc)
        return batch_generate_embeddings(
            self.root,
            items,
            provider,
            on_progress=on_progress,
            max_chars=self.max_embedding_chars,
            timeout=self.lock_timeout,
        )

    def semantic_search(
        self,
        query: str,
        memory_type: str | None = None,
        threshold: float = 0.5,
        limit: int = 20,
    ) -> list[SemanticMatch]:
        return semantic_search(
            self.root,
            query,
            self._require_embedder(),
            memory_type=memory_type,
            threshold=threshold,
            limit=limit,
            max_chars=self.max_embedding_chars,
        )

    def similar_to(self, memory_id: str, threshold: float = 0.85, limit: int = 5) -> list[SemanticMatch]:
        return find_similar_to_memory(self.root, memory_id, threshold, limit)

    def find_duplicates(self, threshold: float = 0.92, limit: int | None = None) -> list[DuplicatePair]:
        return find_duplicates(self.root, threshold, limit, self.lsh_options)

    def suggest_links(
        self, threshold: float = 0.75, limit: int = 20, auto_link: bool = False
    ) -> LinkSuggestions:
        return suggest_links(self.root, threshold, limit, auto_link, timeout=self.lock_timeout)


def _clean_strings(values: Iterable[str] | str | None, field_name: str) -> list[str]:
    """Normalise a tag or link argument to a de-duplicated list of non-empty strings."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    result: list[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} must be non-empty strings", field=field_name)
        value = value.strip()
        if value not in result:
            result.append(value)
    return result
