"""Memory tools for agents and other callers that need plain results.

Every tool returns a JSON-friendly dict with ``"status": "success"`` or
``"status": "error"`` and an ``"error"`` message; nothing raises out of
a tool.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

from memkeep.bulk.operations import BulkOperations
from memkeep.config import MemkeepConfig, load_config
from memkeep.errors import MemkeepError
from memkeep.memory.maintenance import (
    check_health,
    move_memory,
    promote_memory,
    rename_memory,
    sync_store,
)
from memkeep.scope.resolver import ScopeContext, merge_memories_from_scopes, open_store

if TYPE_CHECKING:
    from memkeep.memory.store import MemoryStore
    from memkeep.search.embedding import EmbeddingProvider

logger = logging.getLogger(__name__)


def _tool(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> dict[str, Any]:
        try:
            result = fn(*args, **kwargs)
        except MemkeepError as exc:
            return {"status": "error", "error": str(exc)}
        except Exception as exc:
            logger.error("Tool %s failed: %s", fn.__name__, exc, exc_info=True)
            return {"status": "error", "error": f"{fn.__name__} failed: {exc}"}
        return {"status": "success", **result}

    return wrapper


def get_memory_tools(
    store: MemoryStore,
    context: ScopeContext | None = None,
    duplicate_threshold: float = 0.92,
) -> dict[str, callable]:
    """Return a dict of tool_name -> callable for memory operations.

    ``context`` enables the cross-scope tools (``list_all_scopes`` and
    ``move_memory``/``bulk_move``); without it they report an error.
    """

    def _store_for(scope: str) -> MemoryStore:
        if context is None:
            raise MemkeepError("No scope context configured")
        return open_store(
            context,
            scope,
            embedder=store.embedder,
            lock_timeout=store.lock_timeout,
            max_embedding_chars=store.max_embedding_chars,
            lsh_options=store.lsh_options,
        )

    bulk = BulkOperations(store, open_store=_store_for)

    @_tool
    def write_memory(
        type: str,
        title: str,
        content: str,
        tags: list[str] | None = None,
        severity: str | None = None,
        links: list[str] | None = None,
    ) -> dict:
        """Create a memory and return its id."""
        memory = store.write(type, title, content, tags=tags, severity=severity, links=links)
        return {"id": memory.id, "path": str(memory.path)}

    @_tool
    def read_memory(id: str) -> dict:
        """Read one memory's header and body."""
        memory = store.read(id)
        fm = memory.frontmatter
        return {
            "id": memory.id,
            "title": fm.title,
            "type": fm.type,
            "tags": fm.tags,
            "scope": memory.scope,
            "severity": fm.severity,
            "created": fm.created,
            "updated": fm.updated,
            "content": memory.content,
        }

    @_tool
    def delete_memory(id: str) -> dict:
        store.delete(id)
        return {"id": id}

    @_tool
    def tag_memory(id: str, tags: list[str]) -> dict:
        return {"id": id, "tags": store.tag(id, tags)}

    @_tool
    def untag_memory(id: str, tags: list[str]) -> dict:
        return {"id": id, "tags": store.untag(id, tags)}

    @_tool
    def list_memories(
        type: str | None = None,
        tags: list[str] | None = None,
        sort_by: str = "created",
        limit: int | None = None,
    ) -> dict:
        entries = store.list(memory_type=type, tags=tags, sort_by=sort_by, limit=limit)
        return {"count": len(entries), "memories": [e.to_dict() for e in entries]}

    @_tool
    def list_all_scopes() -> dict:
        """Index entries from every accessible scope, highest precedence first."""
        if context is None:
            raise MemkeepError("No scope context configured")
        merged = merge_memories_from_scopes(context)
        return {
            "count": len(merged.memories),
            "memories": [e.to_dict() for e in merged.memories],
            "scopes_searched": [s.value for s in merged.scopes_searched],
            "errors": merged.errors,
        }

    @_tool
    def search_memories(query: str, type: str | None = None, limit: int = 20) -> dict:
        """Keyword search over titles, tags and bodies."""
        results = store.search(query, memory_type=type, limit=limit)
        return {"count": len(results), "results": [asdict(r) for r in results]}

    @_tool
    def semantic_search(
        query: str, type: str | None = None, threshold: float = 0.5, limit: int = 20
    ) -> dict:
        results = store.semantic_search(query, memory_type=type, threshold=threshold, limit=limit)
        return {"count": len(results), "results": [asdict(r) for r in results]}

    @_tool
    def find_duplicates(threshold: float | None = None, limit: int | None = None) -> dict:
        if threshold is None:
            threshold = duplicate_threshold
        pairs = store.find_duplicates(threshold, limit)
        return {"count": len(pairs), "pairs": [asdict(p) for p in pairs]}

    @_tool
    def suggest_links(threshold: float = 0.75, limit: int = 20, auto_link: bool = False) -> dict:
        result = store.suggest_links(threshold, limit, auto_link)
        return {"count": len(result.suggestions), **asdict(result)}

    @_tool
    def link_memories(source: str, target: str, relation: str | None = None) -> dict:
        created = store.link(source, target, relation)
        return {"source": source, "target": target, "created": created}

    @_tool
    def unlink_memories(source: str, target: str, relation: str | None = None) -> dict:
        removed = store.unlink(source, target, relation)
        return {"source": source, "target": target, "removed": removed}

    @_tool
    def memory_impact(id: str) -> dict:
        """What breaks if a memory is removed."""
        report = store.impact(id)
        return {
            "id": id,
            "broken_edges": report.broken_edges,
            "orphaned_nodes": list(report.orphaned_nodes),
        }

    @_tool
    def rename(id: str, new_id: str) -> dict:
        return asdict(rename_memory(store, id, new_id))

    @_tool
    def promote(id: str, target_type: str) -> dict:
        return asdict(promote_memory(store, id, target_type))

    @_tool
    def move(id: str, target_scope: str) -> dict:
        return asdict(move_memory(store, _store_for(target_scope), id))

    @_tool
    def rebuild_index(force: bool = False) -> dict:
        return asdict(store.rebuild_index(force=force))

    @_tool
    def sync(dry_run: bool = False) -> dict:
        return asdict(sync_store(store, dry_run=dry_run))

    @_tool
    def health() -> dict:
        report = asdict(check_health(store))
        report["health"] = report.pop("status")
        return report

    return {
        "write_memory": write_memory,
        "read_memory": read_memory,
        "delete_memory": delete_memory,
        "tag_memory": tag_memory,
        "untag_memory": untag_memory,
        "list_memories": list_memories,
        "list_all_scopes": list_all_scopes,
        "search_memories": search_memories,
        "semantic_search": semantic_search,
        "find_duplicates": find_duplicates,
        "suggest_links": suggest_links,
        "link_memories": link_memories,
        "unlink_memories": unlink_memories,
        "memory_impact": memory_impact,
        "rename_memory": rename,
        "promote_memory": promote,
        "move_memory": move,
        "rebuild_index": rebuild_index,
        "sync_memories": sync,
        "check_health": health,
        "bulk_delete": bulk.bulk_delete,
        "bulk_tag": bulk.bulk_tag,
        "bulk_link": bulk.bulk_link,
        "bulk_unlink": bulk.bulk_unlink,
        "bulk_move": bulk.bulk_move,
        "bulk_promote": bulk.bulk_promote,
    }


def build_memory_tools(
    config: MemkeepConfig | None = None,
    cwd: Path | None = None,
    scope: str | None = None,
    embedder: EmbeddingProvider | None = None,
) -> dict[str, callable]:
    """Open the store for ``scope`` (or the default scope) as configured and return its tools.

    Raises ValidationError if the scope cannot be resolved.
    """
    config = config or load_config()
    context = ScopeContext.from_config(config, cwd)
    store = open_store(
        context,
        scope,
        embedder=embedder,
        lock_timeout=config.lock_timeout,
        max_embedding_chars=config.embedding.max_chars,
        lsh_options=config.similarity.lsh_options(),
    )
    logger.debug("Opened %r for tools", store)
    return get_memory_tools(
        store, context, duplicate_threshold=config.similarity.duplicate_threshold
    )
