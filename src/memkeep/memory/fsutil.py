"""Filesystem helpers: atomic writes, tolerant JSON reads, the storage lock."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".memkeep.lock"
DEFAULT_LOCK_TIMEOUT = 10.0


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def atomic_write_text(path: Path, text: str) -> None:
    """Write text via a sibling temp file and rename, so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


class JsonState(str, Enum):
    """Outcome of reading a JSON document from disk."""

    OK = "ok"
    MISSING = "missing"
    EMPTY = "empty"
    CORRUPT = "corrupt"


@dataclass
class JsonRead:
    state: JsonState
    data: Any = None
    error: str | None = None


def read_json(path: Path) -> JsonRead:
    """Read a JSON document without raising on missing, empty or invalid content.

    Permission errors still propagate.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return JsonRead(JsonState.MISSING)
    except UnicodeDecodeError as exc:
        return JsonRead(JsonState.CORRUPT, error=str(exc))
    if not text.strip():
        return JsonRead(JsonState.EMPTY)
    try:
        return JsonRead(JsonState.OK, json.loads(text))
    except (ValueError, RecursionError) as exc:
        return JsonRead(JsonState.CORRUPT, error=str(exc))


@contextmanager
def storage_lock(root: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
    """Hold the advisory lock for one storage root.

    Guards load-mutate-save sequences against other processes. Not
    re-entrant across separate calls: never nest two ``storage_lock``
    blocks for the same root.
    """
    root.mkdir(parents=True, exist_ok=True)
    with FileLock(str(root / LOCK_FILENAME), timeout=timeout):
        yield


def list_markdown_files(root: Path) -> list[Path]:
    """All memory files under the permanent/ and temporary/ directories, sorted."""
    files: list[Path] = []
    for sub in ("permanent", "temporary"):
        directory = root / sub
        if directory.is_dir():
            files.extend(sorted(directory.glob("*.md")))
    return files
