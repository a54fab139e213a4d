"""Semantic search, similar memories and link suggestions over one storage root."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from memkeep.errors import GraphIntegrityError, ValidationError
from memkeep.graph.structure import Graph, add_edge, load_graph, mutate_graph
from memkeep.memory.fsutil import DEFAULT_LOCK_TIMEOUT
from memkeep.memory.index import load_index
from memkeep.search.embedding import (
    MAX_EMBEDDING_CHARS,
    EmbeddingProvider,
    generate_embedding,
    load_embedding_cache,
)
from memkeep.search.similarity import (
    DuplicatePair,
    LSHOptions,
    SimilarityResult,
    find_potential_duplicates,
    find_similar_memories,
)
from memkeep.types import EdgeType, IndexEntry, MemoryType

logger = logging.getLogger(__name__)


@dataclass
class SemanticMatch:
    id: str
    type: str
    title: str
    score: float
    tags: list[str] = field(default_factory=list)
    scope: str | None = None


def _attach(
    matches: list[SimilarityResult],
    entries: dict[str, IndexEntry],
    memory_type: str | None = None,
    scope: str | None = None,
    limit: int | None = None,
) -> list[SemanticMatch]:
    """Join similarity hits with index metadata, dropping ids no longer indexed."""
    results: list[SemanticMatch] = []
    for match in matches:
        entry = entries.get(match.id)
        if entry is None:
            continue
        if memory_type and entry.type != memory_type:
            continue
        if scope and entry.scope != scope:
            continue
        results.append(
            SemanticMatch(
                id=entry.id,
                type=entry.type,
                title=entry.title,
                score=match.similarity,
                tags=list(entry.tags),
                scope=entry.scope,
            )
        )
        if limit is not None and len(results) >= limit:
            break
    return results


def semantic_search(
    root: Path,
    query: str,
    provider: EmbeddingProvider,
    memory_type: str | None = None,
    scope: str | None = None,
    threshold: float = 0.5,
    limit: int = 20,
    max_chars: int = MAX_EMBEDDING_CHARS,
) -> list[SemanticMatch]:
    """Indexed memories whose cached embedding is close to ``query``."""
    if not query or not query.strip():
        raise ValidationError("Query cannot be empty", field="query")

    query_vector = generate_embedding(query, provider, max_chars)
    cache = load_embedding_cache(root)
    matches = find_similar_memories(query_vector, cache.vectors(), threshold)
    entries = {entry.id: entry for entry in load_index(root).entries}
    results = _attach(matches, entries, memory_type, scope, limit)
    logger.debug(
        "Semantic search %r: %d results (threshold %.2f)", query[:50], len(results), threshold
    )
    return results


def find_similar_to_memory(
    root: Path,
    memory_id: str,
    threshold: float = 0.85,
    limit: int = 5,
) -> list[SemanticMatch]:
    """Memories whose cached embedding is close to that of ``memory_id``."""
    cache = load_embedding_cache(root)
    target = cache.memories.get(memory_id)
    if target is None:
        logger.warning("No embedding found for memory %s", memory_id)
        return []
    matches = find_similar_memories(
        target.vector, cache.vectors(), threshold, exclude_id=memory_id
    )
    entries = {entry.id: entry for entry in load_index(root).entries}
    return _attach(matches, entries, limit=limit)


def find_duplicates(
    root: Path,
    threshold: float = 0.92,
    limit: int | None = None,
    options: LSHOptions | None = None,
) -> list[DuplicatePair]:
    """Likely duplicate pairs among indexed memories with cached embeddings."""
    indexed = set(load_index(root).ids())
    vectors = {k: v for k, v in load_embedding_cache(root).vectors().items() if k in indexed}
    return find_potential_duplicates(vectors, threshold, limit, options)


@dataclass
class SuggestedLink:
    source: str
    target: str
    similarity: float
    source_title: str
    target_title: str
    reason: str


@dataclass
class LinkSuggestions:
    suggestions: list[SuggestedLink] = field(default_factory=list)
    created: int = 0
    skipped: int = 0
    analysed: int = 0


def suggest_links(
    root: Path,
    threshold: float = 0.75,
    limit: int = 20,
    auto_link: bool = False,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> LinkSuggestions:
    """Pairs of unlinked memories whose cached embeddings are close.

    Only memories present in the index, the graph and the embedding cache
    are considered; breadcrumbs are skipped. A pair already joined by an
    edge in either direction counts as skipped. Each unordered pair is
    suggested once. With ``auto_link`` the suggestions become
    ``auto-linked-by-similarity`` edges in a single graph save.
    """
    result = LinkSuggestions()
    entries = {entry.id: entry for entry in load_index(root).entries}
    graph = load_graph(root)
    node_ids = {node.id for node in graph.nodes}
    vectors = {
        memory_id: vector
        for memory_id, vector in load_embedding_cache(root).vectors().items()
        if memory_id in entries
        and memory_id in node_ids
        and entries[memory_id].type != MemoryType.BREADCRUMB.value
    }
    if len(vectors) < 2:
        return result

    linked = {(e.source, e.target) for e in graph.edges}
    linked |= {(target, source) for source, target in linked}
    seen: set[tuple[str, str]] = set()
    candidates: list[SuggestedLink] = []
    for source_id in sorted(vectors):
        matches = find_similar_memories(
            vectors[source_id], vectors, threshold, exclude_id=source_id
        )
        for match in matches:
            pair = (min(source_id, match.id), max(source_id, match.id))
            if pair in seen:
                continue
            seen.add(pair)
            result.analysed += 1
            if pair in linked:
                result.skipped += 1
                continue
            candidates.append(
                SuggestedLink(
                    source=source_id,
                    target=match.id,
                    similarity=match.similarity,
                    source_title=entries[source_id].title,
                    target_title=entries[match.id].title,
                    reason=f"Semantic similarity: {match.similarity * 100:.1f}%",
                )
            )

    candidates.sort(key=lambda s: (-s.similarity, s.source, s.target))
    result.suggestions = candidates[:limit]

    if auto_link and result.suggestions:

        def _link(current: Graph) -> Graph:
            for suggestion in result.suggestions:
                try:
                    updated = add_edge(
                        current, suggestion.source, suggestion.target, EdgeType.AUTO_LINKED.value
                    )
                except GraphIntegrityError as exc:
                    logger.warning("Could not auto-link %s: %s", suggestion.source, exc)
                    continue
                if updated is not current:
                    result.created += 1
                current = updated
            return current

        mutate_graph(root, _link, timeout=timeout)
        logger.info("Auto-linked %d memory pairs in %s", result.created, root)
    logger.debug(
        "Link suggestions for %s: %d suggested, %d already linked, %d analysed",
        root,
        len(result.suggestions),
        result.skipped,
        result.analysed,
    )
    return result
