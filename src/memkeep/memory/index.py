"""Index manager: the per-root ``index.json`` projection of memory headers.

The index is derived data. ``load_index`` never raises on bad content; it
degrades to an empty index and ``inspect_index`` reports why, so callers
can tell "nothing stored" apart from "needs rebuild". ``rebuild_index``
re-derives everything from the markdown files on disk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from memkeep.errors import CorruptionError, MemkeepError
from memkeep.memory.frontmatter import parse_memory_file
from memkeep.memory.fsutil import (
    DEFAULT_LOCK_TIMEOUT,
    JsonState,
    list_markdown_files,
    now_iso,
    read_json,
    storage_lock,
    write_json,
)
from memkeep.memory.slug import parse_id
from memkeep.types import IndexEntry, MemoryIndex, Scope, subdirectory_for

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"
INDEX_FILENAME = "index.json"


class IndexState(str, Enum):
    """Why a loaded index looks the way it does."""

    OK = "ok"
    MISSING = "missing"
    EMPTY = "empty"
    CORRUPT = "corrupt"  # not valid JSON
    MALFORMED = "malformed"  # valid JSON without a usable entries list


@dataclass
class IndexLoad:
    index: MemoryIndex
    state: IndexState
    error: str | None = None

    @property
    def needs_rebuild(self) -> bool:
        return self.state in (IndexState.CORRUPT, IndexState.MALFORMED)


@dataclass
class RebuildResult:
    entries_count: int
    new_entries_added: int
    orphans_removed: int
    previous_state: IndexState = IndexState.OK
    skipped_files: list[str] = field(default_factory=list)


def index_path(root: Path) -> Path:
    return root / INDEX_FILENAME


def create_empty_index() -> MemoryIndex:
    return MemoryIndex(version=INDEX_VERSION, last_updated=now_iso(), entries=[])


def _migrate_entry(raw: dict[str, Any], root: Path) -> IndexEntry:
    """Fill in ``relativePath`` for entries written by older versions."""
    data = dict(raw)
    if not data.get("relativePath"):
        legacy = data.pop("file", None)
        if legacy:
            legacy_path = Path(str(legacy))
            try:
                data["relativePath"] = legacy_path.relative_to(root).as_posix()
            except ValueError:
                data["relativePath"] = legacy_path.as_posix()
        else:
            memory_type = data.get("type")
            if not memory_type:
                parsed = parse_id(data["id"])
                memory_type = parsed[0].value if parsed else ""
            data["relativePath"] = f"{subdirectory_for(str(memory_type))}/{data['id']}.md"
    if not data.get("type"):
        parsed = parse_id(data["id"])
        if parsed:
            data["type"] = parsed[0].value
    return IndexEntry.from_dict(data)


def inspect_index(root: Path) -> IndexLoad:
    """Load the index and classify its on-disk condition."""
    path = index_path(root)
    result = read_json(path)
    if result.state is JsonState.MISSING:
        return IndexLoad(create_empty_index(), IndexState.MISSING)
    if result.state is JsonState.EMPTY:
        logger.warning("Index %s is empty, treating as no entries", path)
        return IndexLoad(create_empty_index(), IndexState.EMPTY)
    if result.state is JsonState.CORRUPT:
        logger.warning("Failed to parse index %s, returning empty: %s", path, result.error)
        return IndexLoad(create_empty_index(), IndexState.CORRUPT, result.error)

    doc = result.data
    if not isinstance(doc, dict):
        error = f"index root is {type(doc).__name__}, expected object"
        logger.warning("Index %s has invalid structure (%s), returning empty", path, error)
        return IndexLoad(create_empty_index(), IndexState.MALFORMED, error)

    # "memories" is the key used by older versions of the document
    raw_entries = doc.get("entries", doc.get("memories"))
    if not isinstance(raw_entries, list):
        error = "missing entries array" if raw_entries is None else "entries is not an array"
        logger.warning("Index %s has invalid structure (%s), returning empty", path, error)
        return IndexLoad(create_empty_index(), IndexState.MALFORMED, error)

    entries: list[IndexEntry] = []
    seen: set[str] = set()
    for raw in raw_entries:
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str) or not raw["id"]:
            continue
        if raw["id"] in seen:
            continue
        seen.add(raw["id"])
        entries.append(_migrate_entry(raw, root))

    index = MemoryIndex(
        version=str(doc.get("version", INDEX_VERSION)),
        last_updated=str(doc.get("lastUpdated", "")),
        entries=entries,
        extra={
            k: v
            for k, v in doc.items()
            if k not in ("version", "lastUpdated", "entries", "memories")
        },
    )
    return IndexLoad(index, IndexState.OK)


def load_index(root: Path) -> MemoryIndex:
    """Load the index, returning an empty valid index on any content problem."""
    return inspect_index(root).index


def save_index(root: Path, index: MemoryIndex) -> None:
    index.last_updated = now_iso()
    write_json(index_path(root), index.to_dict())
    logger.debug("Saved index %s (%d entries)", index_path(root), len(index.entries))


def find_in_index(root: Path, memory_id: str) -> IndexEntry | None:
    return load_index(root).get(memory_id)


# ── Single-item mutations ─────────────────────────────────────


def add_to_index(root: Path, entry: IndexEntry, timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
    """Insert an entry, replacing any existing entry with the same id."""
    batch_add_to_index(root, [entry], timeout=timeout)


def update_in_index(root: Path, entry: IndexEntry, timeout: float = DEFAULT_LOCK_TIMEOUT) -> bool:
    """Replace an existing entry in place. Returns False if the id is not indexed."""
    return batch_update_index(root, [entry], timeout=timeout) == 1


def remove_from_index(root: Path, memory_id: str, timeout: float = DEFAULT_LOCK_TIMEOUT) -> bool:
    return batch_remove_from_index(root, [memory_id], timeout=timeout) == 1


# ── Batch mutations: one load, one save ───────────────────────


def batch_add_to_index(
    root: Path, entries: Iterable[IndexEntry], timeout: float = DEFAULT_LOCK_TIMEOUT
) -> int:
    entries = list(entries)
    if not entries:
        return 0
    with storage_lock(root, timeout):
        index = load_index(root)
        incoming = {entry.id: entry for entry in entries}
        index.entries = [e for e in index.entries if e.id not in incoming]
        index.entries.extend(incoming.values())
        save_index(root, index)
    logger.debug("Added %d entries to index", len(incoming))
    return len(incoming)


def batch_update_index(
    root: Path, entries: Iterable[IndexEntry], timeout: float = DEFAULT_LOCK_TIMEOUT
) -> int:
    updates = {entry.id: entry for entry in entries}
    if not updates:
        return 0
    with storage_lock(root, timeout):
        index = load_index(root)
        updated = 0
        for i, existing in enumerate(index.entries):
            if existing.id in updates:
                index.entries[i] = updates[existing.id]
                updated += 1
        if updated:
            save_index(root, index)
    return updated


def batch_remove_from_index(
    root: Path, ids: Iterable[str], timeout: float = DEFAULT_LOCK_TIMEOUT
) -> int:
    """Remove every listed id. Returns how many entries were actually removed."""
    doomed = set(ids)
    if not doomed:
        return 0
    with storage_lock(root, timeout):
        index = load_index(root)
        before = len(index.entries)
        index.entries = [e for e in index.entries if e.id not in doomed]
        removed = before - len(index.entries)
        if removed:
            save_index(root, index)
            logger.debug("Batch removed %d entries from index", removed)
    return removed


# ── Rebuild ───────────────────────────────────────────────────


def entry_from_file(path: Path, root: Path, scope: str) -> IndexEntry:
    """Project a memory file's header into an index entry. The filename is the id."""
    parsed = parse_memory_file(path)
    fm = parsed.frontmatter
    return IndexEntry(
        id=path.stem,
        type=fm.type,
        title=fm.title,
        tags=list(fm.tags),
        created=fm.created or "",
        updated=fm.updated or fm.created or "",
        scope=fm.scope or scope,
        relative_path=path.relative_to(root).as_posix(),
        severity=fm.severity,
    )


def rebuild_index(
    root: Path,
    scope: str = Scope.GLOBAL.value,
    force: bool = False,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> RebuildResult:
    """Re-derive the index from the markdown files under ``root``.

    A missing, empty or unparseable index is rebuilt as if it held no
    entries. A document that parses but has no entries array raises
    CorruptionError unless ``force`` is set, so a foreign or hand-edited
    file is never overwritten silently.

    Files that fail to parse are skipped and listed in the result.
    """
    with storage_lock(root, timeout):
        loaded = inspect_index(root)
        if loaded.state is IndexState.MALFORMED and not force:
            raise CorruptionError(
                f"Cannot rebuild index: existing document is malformed ({loaded.error}); "
                "pass force=True to replace it",
                path=index_path(root),
            )

        existing = {entry.id: entry for entry in loaded.index.entries}
        entries: list[IndexEntry] = []
        found: set[str] = set()
        skipped: list[str] = []
        added = 0

        for path in list_markdown_files(root):
            if path.stem in found:
                logger.warning("Duplicate memory id %s at %s, keeping first", path.stem, path)
                continue
            try:
                entry = entry_from_file(path, root, scope)
            except (MemkeepError, OSError, UnicodeDecodeError) as exc:
                logger.warning("Failed to parse memory file %s: %s", path, exc)
                skipped.append(path.relative_to(root).as_posix())
                continue
            previous = existing.get(entry.id)
            if previous is not None:
                entry.extra = dict(previous.extra)
            else:
                added += 1
            found.add(entry.id)
            entries.append(entry)

        orphans = sum(1 for memory_id in existing if memory_id not in found)
        index = create_empty_index()
        index.entries = entries
        if loaded.state is IndexState.OK:
            index.extra = dict(loaded.index.extra)
        save_index(root, index)

    logger.info(
        "Rebuilt index %s: %d entries, %d added, %d orphans removed",
        index_path(root),
        len(entries),
        added,
        orphans,
    )
    return RebuildResult(
        entries_count=len(entries),
        new_entries_added=added,
        orphans_removed=orphans,
        previous_state=loaded.state,
        skipped_files=skipped,
    )
