"""Embedding providers and the per-root embedding cache.

Cache document (``embeddings.json``)::

    {"version": 1,
     "memories": {"<id>": {"vector": [...], "fingerprint": "<16 hex>", "timestamp": "..."}}}

An entry is reused only while its fingerprint matches the memory's
current content; otherwise the provider is called again. Provider
failures surface as ProviderError and are never retried here.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np

from memkeep.errors import ProviderError, ValidationError
from memkeep.memory.fsutil import (
    DEFAULT_LOCK_TIMEOUT,
    JsonState,
    now_iso,
    read_json,
    storage_lock,
    write_json,
)
from memkeep.search.similarity import normalize

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
CACHE_FILENAME = "embeddings.json"
MAX_EMBEDDING_CHARS = 6000

# (current, total)
ProgressCallback = Callable[[int, int], None]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into a vector."""

    @property
    def name(self) -> str: ...

    def embed(self, text: str) -> list[float]:
        """Return an embedding for ``text``. May raise on connection or rate-limit errors."""
        ...


class CallableProvider:
    """Adapts a plain ``text -> vector`` function to the provider protocol."""

    def __init__(self, fn: Callable[[str], Any], name: str = "callable") -> None:
        self._fn = fn
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def embed(self, text: str) -> list[float]:
        return list(self._fn(text))


class HashEmbeddingProvider:
    """Deterministic, offline provider using the hashing trick.

    Each word is hashed to a signed bucket, so texts sharing vocabulary get
    similar vectors. Useful for tests and air-gapped installs; it carries no
    semantics beyond word overlap.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    @property
    def name(self) -> str:
        return f"hash:{self.dimension}"

    def embed(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in re.findall(r"\w+", text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:8], "big") % self.dimension
            vector[bucket] += 1.0 if digest[8] & 1 else -1.0
        return vector.tolist()


@dataclass
class EmbeddingCacheEntry:
    vector: list[float]
    fingerprint: str
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"vector": self.vector, "fingerprint": self.fingerprint, "timestamp": self.timestamp}


@dataclass
class EmbeddingCache:
    version: int = CACHE_VERSION
    memories: dict[str, EmbeddingCacheEntry] = field(default_factory=dict)

    def vectors(self) -> dict[str, list[float]]:
        return {memory_id: entry.vector for memory_id, entry in self.memories.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "memories": {k: v.to_dict() for k, v in self.memories.items()},
        }


@dataclass
class BatchEmbeddingResult:
    id: str
    vector: list[float]
    from_cache: bool


def content_fingerprint(content: str) -> str:
    """First 16 hex characters of the SHA-256 of ``content``."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def truncate_for_embedding(content: str, max_chars: int = MAX_EMBEDDING_CHARS) -> str:
    """Cut long content at a word boundary near ``max_chars`` and mark it with ``...``."""
    if len(content) <= max_chars:
        return content
    truncated = content[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars - 100:
        truncated = truncated[:last_space]
    return truncated + "..."


def generate_embedding(
    text: str,
    provider: EmbeddingProvider,
    max_chars: int = MAX_EMBEDDING_CHARS,
) -> list[float]:
    """Call the provider and return a unit-length vector."""
    if not text or not text.strip():
        raise ValidationError("Text cannot be empty", field="text")
    try:
        raw = provider.embed(truncate_for_embedding(text, max_chars))
    except ProviderError:
        raise
    except Exception as exc:
        raise ProviderError(f"Embedding provider {provider.name} failed: {exc}") from exc

    vector = np.asarray(raw, dtype=np.float64).ravel()
    if vector.size == 0 or not np.all(np.isfinite(vector)):
        raise ProviderError(f"Embedding provider {provider.name} returned an invalid vector")
    return normalize(vector).tolist()


# ── Cache persistence ─────────────────────────────────────────


def cache_path(root: Path) -> Path:
    return root / CACHE_FILENAME


def _entry_from_dict(raw: Any) -> EmbeddingCacheEntry | None:
    if not isinstance(raw, dict):
        return None
    # "embedding" and "hash" are the keys used by older cache files
    vector = raw.get("vector", raw.get("embedding"))
    fingerprint = raw.get("fingerprint", raw.get("hash"))
    if not isinstance(vector, list) or not isinstance(fingerprint, str):
        return None
    try:
        floats = [float(v) for v in vector]
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) for v in floats):
        return None
    return EmbeddingCacheEntry(floats, fingerprint, str(raw.get("timestamp", "")))


def load_embedding_cache(root: Path) -> EmbeddingCache:
    """Load the cache; missing or unusable content yields an empty cache."""
    path = cache_path(root)
    result = read_json(path)
    if result.state is JsonState.MISSING:
        return EmbeddingCache()
    if result.state is not JsonState.OK or not isinstance(result.data, dict):
        logger.warning("Failed to load embedding cache %s, starting fresh", path)
        return EmbeddingCache()

    raw_memories = result.data.get("memories")
    if not isinstance(raw_memories, dict):
        logger.warning("Embedding cache %s has no memories map, starting fresh", path)
        return EmbeddingCache()
    cache = EmbeddingCache()
    dropped = 0
    for memory_id, raw in raw_memories.items():
        entry = _entry_from_dict(raw)
        if entry is None:
            dropped += 1
        else:
            cache.memories[str(memory_id)] = entry
    if dropped:
        logger.warning("Dropped %d unusable entries from embedding cache %s", dropped, path)
    return cache


def save_embedding_cache(root: Path, cache: EmbeddingCache) -> None:
    write_json(cache_path(root), cache.to_dict())
    logger.debug("Saved embedding cache %s (%d memories)", cache_path(root), len(cache.memories))


# ── Cached generation ─────────────────────────────────────────


def get_embedding_for_memory(
    root: Path,
    memory_id: str,
    content: str,
    provider: EmbeddingProvider,
    max_chars: int = MAX_EMBEDDING_CHARS,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> list[float]:
    """Return the cached vector for a memory, regenerating it if the content changed."""
    fingerprint = content_fingerprint(content)
    cached = load_embedding_cache(root).memories.get(memory_id)
    if cached is not None and cached.fingerprint == fingerprint:
        logger.debug("Using cached embedding for %s", memory_id)
        return cached.vector

    logger.debug("Generating new embedding for %s", memory_id)
    vector = generate_embedding(content, provider, max_chars)
    with storage_lock(root, timeout):
        cache = load_embedding_cache(root)
        cache.memories[memory_id] = EmbeddingCacheEntry(vector, fingerprint, now_iso())
        save_embedding_cache(root, cache)
    return vector


def batch_generate_embeddings(
    root: Path,
    memories: Iterable[tuple[str, str]],
    provider: EmbeddingProvider,
    on_progress: ProgressCallback | None = None,
    max_chars: int = MAX_EMBEDDING_CHARS,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> list[BatchEmbeddingResult]:
    """Embed many ``(id, content)`` pairs with one cache load and one save.

    If the provider fails part-way, vectors generated so far are still
    saved before the ProviderError propagates.
    """
    items = list(memories)
    results: list[BatchEmbeddingResult] = []
    with storage_lock(root, timeout):
        cache = load_embedding_cache(root)
        generated = 0
        try:
            for i, (memory_id, content) in enumerate(items):
                fingerprint = content_fingerprint(content)
                cached = cache.memories.get(memory_id)
                if cached is not None and cached.fingerprint == fingerprint:
                    results.append(BatchEmbeddingResult(memory_id, cached.vector, True))
                else:
                    vector = generate_embedding(content, provider, max_chars)
                    cache.memories[memory_id] = EmbeddingCacheEntry(vector, fingerprint, now_iso())
                    generated += 1
                    results.append(BatchEmbeddingResult(memory_id, vector, False))
                if on_progress:
                    on_progress(i + 1, len(items))
        finally:
            if generated:
                save_embedding_cache(root, cache)

    logger.info(
        "Batch embedding complete: %d total, %d cached, %d generated",
        len(items),
        len(items) - generated,
        generated,
    )
    return results


def purge_embeddings(
    root: Path, memory_ids: Iterable[str], timeout: float = DEFAULT_LOCK_TIMEOUT
) -> int:
    """Drop cache entries for the given ids. Returns how many were removed."""
    doomed = set(memory_ids)
    if not doomed or not cache_path(root).exists():
        return 0
    with storage_lock(root, timeout):
        cache = load_embedding_cache(root)
        removed = [memory_id for memory_id in doomed if memory_id in cache.memories]
        for memory_id in removed:
            del cache.memories[memory_id]
        if removed:
            save_embedding_cache(root, cache)
    return len(removed)


def pop_embedding(
    root: Path, memory_id: str, timeout: float = DEFAULT_LOCK_TIMEOUT
) -> EmbeddingCacheEntry | None:
    """Remove and return one cache entry, if present."""
    if not cache_path(root).exists():
        return None
    with storage_lock(root, timeout):
        cache = load_embedding_cache(root)
        entry = cache.memories.pop(memory_id, None)
        if entry is not None:
            save_embedding_cache(root, cache)
    return entry


def put_embedding(
    root: Path,
    memory_id: str,
    entry: EmbeddingCacheEntry,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> None:
    with storage_lock(root, timeout):
        cache = load_embedding_cache(root)
        cache.memories[memory_id] = entry
        save_embedding_cache(root, cache)
