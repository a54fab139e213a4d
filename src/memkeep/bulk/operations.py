"""Bulk operations: filter the index once, then apply one change to every match.

Every operation returns ``{"status": "success", ...}`` or
``{"status": "error", "error": message}`` and never raises. A failing item
is recorded with its reason and does not stop the rest of the batch.
Delete and link write the index and graph once per call.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable

from memkeep.bulk.pattern import FilterCriteria, PatternMatcher
from memkeep.errors import ValidationError
from memkeep.memory.maintenance import move_memory, promote_memory
from memkeep.memory.store import MemoryStore
from memkeep.types import IndexEntry, MemoryIndex, parse_memory_type, parse_scope

logger = logging.getLogger(__name__)

FILTER_REQUIRED = "At least one filter criteria is required (pattern, tags, type, scope, or ids)"


@dataclass
class BulkProgress:
    current: int
    total: int
    phase: str  # scanning | processing | complete
    current_id: str | None = None


ProgressCallback = Callable[[BulkProgress], None]
StoreOpener = Callable[[str], MemoryStore]

Result = dict[str, Any]


def _boundary(name: str):
    """Turn raised errors into an error result, logging the unexpected ones."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs) -> Result:
            try:
                return fn(*args, **kwargs)
            except ValidationError as exc:
                return {"status": "error", "error": str(exc)}
            except Exception as exc:
                logger.error("Bulk %s failed: %s", name, exc, exc_info=True)
                return {"status": "error", "error": f"Bulk {name} failed: {exc}"}

        return wrapper

    return decorator


def _reason(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class BulkOperations:
    """Bulk delete/tag/link/unlink/move/promote against one store.

    ``open_store`` maps a scope name to the store for that scope and is
    only needed by :meth:`bulk_move`.
    """

    def __init__(
        self,
        store: MemoryStore,
        matcher: PatternMatcher | None = None,
        open_store: StoreOpener | None = None,
    ) -> None:
        self.store = store
        self.matcher = matcher or PatternMatcher()
        self.open_store = open_store

    # ── Matching ──────────────────────────────────────────────

    def _criteria(
        self,
        pattern: str | None,
        tags: list[str] | None,
        type: str | None,
        scope: str | None,
        ids: list[str] | None,
    ) -> FilterCriteria:
        criteria = FilterCriteria(pattern or None, list(tags or []), type, scope, list(ids or []))
        if criteria.is_empty():
            raise ValidationError(FILTER_REQUIRED, field="filter")
        return criteria

    def _scan(
        self,
        criteria: FilterCriteria,
        on_progress: ProgressCallback | None,
        index: MemoryIndex | None = None,
    ) -> list[IndexEntry]:
        if on_progress:
            on_progress(BulkProgress(0, 0, "scanning"))
        if index is None:
            index = self.store.load_index()
        return self.matcher.filter(index.entries, criteria)

    @staticmethod
    def _tracker(total: int, on_progress: ProgressCallback | None) -> Callable[[str], None]:
        done = 0

        def step(memory_id: str) -> None:
            nonlocal done
            done += 1
            if on_progress:
                on_progress(BulkProgress(done, total, "processing", memory_id))

        return step

    @staticmethod
    def _complete(total: int, on_progress: ProgressCallback | None) -> None:
        if on_progress:
            on_progress(BulkProgress(total, total, "complete"))

    # ── Delete ────────────────────────────────────────────────

    @_boundary("delete")
    def bulk_delete(
        self,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        criteria = self._criteria(pattern, tags, type, scope, ids)
        index = self.store.load_index()
        matches = [m.id for m in self._scan(criteria, on_progress, index)]

        if dry_run or not matches:
            if matches:
                logger.info("Dry run: would delete %d memories", len(matches))
            return {
                "status": "success",
                "deleted_count": len(matches),
                "deleted_ids": matches,
                "failed_ids": [],
                "dry_run": dry_run,
            }

        report = self.store.delete_many(
            matches, on_item=self._tracker(len(matches), on_progress), index=index
        )
        self._complete(len(matches), on_progress)
        logger.info(
            "Bulk delete complete: %d deleted, %d failed",
            len(report.deleted_ids),
            len(report.failed),
        )
        return {
            "status": "success",
            "deleted_count": len(report.deleted_ids),
            "deleted_ids": report.deleted_ids,
            "failed_ids": report.failed,
            "dry_run": False,
        }

    # ── Tag ───────────────────────────────────────────────────

    @_boundary("tag")
    def bulk_tag(
        self,
        add_tags: list[str] | None = None,
        remove_tags: list[str] | None = None,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        if not add_tags and not remove_tags:
            raise ValidationError(
                "At least one of addTags or removeTags is required", field="add_tags"
            )
        criteria = self._criteria(pattern, tags, type, scope, ids)
        matches = [m.id for m in self._scan(criteria, on_progress)]

        if dry_run or not matches:
            return {
                "status": "success",
                "modified_count": len(matches),
                "modified_ids": matches,
                "failed_ids": [],
                "dry_run": dry_run,
            }

        modified: list[str] = []
        failed: list[dict[str, str]] = []
        step = self._tracker(len(matches), on_progress)
        for memory_id in matches:
            step(memory_id)
            try:
                if add_tags:
                    self.store.tag(memory_id, add_tags)
                if remove_tags:
                    self.store.untag(memory_id, remove_tags)
            except Exception as exc:
                failed.append({"id": memory_id, "reason": _reason(exc)})
                continue
            modified.append(memory_id)

        self._complete(len(matches), on_progress)
        logger.info("Bulk tag complete: %d modified, %d failed", len(modified), len(failed))
        return {
            "status": "success",
            "modified_count": len(modified),
            "modified_ids": modified,
            "failed_ids": failed,
            "dry_run": False,
        }

    # ── Link / unlink ─────────────────────────────────────────

    @_boundary("link")
    def bulk_link(
        self,
        target: str,
        relation: str | None = None,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        if not target or not target.strip():
            raise ValidationError("target is required", field="target")
        criteria = self._criteria(pattern, tags, type, scope, ids)
        index = self.store.load_index()
        if target not in index:
            raise ValidationError(f"Target memory not found: {target}", field="target")
        sources = [m.id for m in self._scan(criteria, on_progress, index) if m.id != target]

        if dry_run or not sources:
            return {
                "status": "success",
                "created_count": len(sources),
                "created_links": [{"source": s, "target": target} for s in sources],
                "existing_count": 0,
                "failed_links": [],
                "dry_run": dry_run,
            }

        report = self.store.link_many(
            sources,
            target,
            relation,
            on_item=self._tracker(len(sources), on_progress),
            index=index,
        )
        self._complete(len(sources), on_progress)
        logger.info(
            "Bulk link complete: %d created, %d existing, %d failed",
            len(report.created),
            len(report.existing),
            len(report.failed),
        )
        return {
            "status": "success",
            "created_count": len(report.created),
            "created_links": [{"source": s, "target": target} for s in report.created],
            "existing_count": len(report.existing),
            "failed_links": [{"source": f["id"], "reason": f["reason"]} for f in report.failed],
            "dry_run": False,
        }

    @_boundary("unlink")
    def bulk_unlink(
        self,
        target: str,
        relation: str | None = None,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        if not target or not target.strip():
            raise ValidationError("target is required", field="target")
        criteria = self._criteria(pattern, tags, type, scope, ids)
        sources = [m.id for m in self._scan(criteria, on_progress) if m.id != target]

        if dry_run or not sources:
            return {
                "status": "success",
                "unlinked_count": len(sources),
                "unlinked_pairs": [{"source": s, "target": target} for s in sources],
                "failed_ids": [],
                "dry_run": dry_run,
            }

        removed = self.store.unlink_many(
            sources, target, relation, on_item=self._tracker(len(sources), on_progress)
        )
        removed_set = set(removed)
        failed = [
            {"id": s, "reason": f"No link from {s} to {target}"}
            for s in sources
            if s not in removed_set
        ]
        self._complete(len(sources), on_progress)
        logger.info("Bulk unlink complete: %d unlinked, %d failed", len(removed), len(failed))
        return {
            "status": "success",
            "unlinked_count": len(removed),
            "unlinked_pairs": [{"source": s, "target": target} for s in removed],
            "failed_ids": failed,
            "dry_run": False,
        }

    # ── Move / promote ────────────────────────────────────────

    @_boundary("move")
    def bulk_move(
        self,
        target_scope: str | None,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        if not target_scope:
            raise ValidationError("targetScope is required", field="target_scope")
        parsed = parse_scope(target_scope)
        if parsed is None:
            raise ValidationError(f"Unknown scope: {target_scope}", field="target_scope")
        criteria = self._criteria(pattern, tags, type, scope, ids)
        matches = [m.id for m in self._scan(criteria, on_progress) if m.scope != parsed.value]

        if dry_run or not matches:
            return {
                "status": "success",
                "moved_count": len(matches),
                "moved_ids": matches,
                "failed_ids": [],
                "dry_run": dry_run,
            }

        if self.open_store is None:
            raise ValidationError(
                "Moving between scopes needs a store opener", field="target_scope"
            )
        target = self.open_store(parsed.value)

        moved: list[str] = []
        failed: list[dict[str, str]] = []
        step = self._tracker(len(matches), on_progress)
        for memory_id in matches:
            step(memory_id)
            try:
                move_memory(self.store, target, memory_id)
            except Exception as exc:
                failed.append({"id": memory_id, "reason": _reason(exc)})
                continue
            moved.append(memory_id)

        self._complete(len(matches), on_progress)
        logger.info(
            "Bulk move to %s complete: %d moved, %d failed", parsed.value, len(moved), len(failed)
        )
        return {
            "status": "success",
            "moved_count": len(moved),
            "moved_ids": moved,
            "failed_ids": failed,
            "dry_run": False,
        }

    @_boundary("promote")
    def bulk_promote(
        self,
        target_type: str | None,
        pattern: str | None = None,
        tags: list[str] | None = None,
        type: str | None = None,
        scope: str | None = None,
        ids: list[str] | None = None,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Result:
        if not target_type:
            raise ValidationError("targetType is required", field="target_type")
        parsed = parse_memory_type(target_type)
        if parsed is None:
            raise ValidationError(f"Invalid memory type: {target_type}", field="target_type")
        criteria = self._criteria(pattern, tags, type, scope, ids)
        matches = [m.id for m in self._scan(criteria, on_progress) if m.type != parsed.value]

        if dry_run or not matches:
            return {
                "status": "success",
                "promoted_count": len(matches),
                "promoted_ids": matches,
                "renamed": {},
                "failed_ids": [],
                "dry_run": dry_run,
            }

        promoted: list[str] = []
        renamed: dict[str, str] = {}
        failed: list[dict[str, str]] = []
        step = self._tracker(len(matches), on_progress)
        for memory_id in matches:
            step(memory_id)
            try:
                result = promote_memory(self.store, memory_id, parsed)
            except Exception as exc:
                failed.append({"id": memory_id, "reason": _reason(exc)})
                continue
            promoted.append(memory_id)
            if result.new_id:
                renamed[memory_id] = result.new_id

        self._complete(len(matches), on_progress)
        logger.info(
            "Bulk promote to %s complete: %d promoted, %d failed",
            parsed.value,
            len(promoted),
            len(failed),
        )
        return {
            "status": "success",
            "promoted_count": len(promoted),
            "promoted_ids": promoted,
            "renamed": renamed,
            "failed_ids": failed,
            "dry_run": False,
        }
