"""Cosine similarity, nearest-neighbour ranking and duplicate detection.

Duplicate detection compares every pair for small collections and
switches to random-hyperplane LSH above ``LSHOptions.lsh_threshold``:
vectors that land in the same bucket of any table become candidates,
and only candidates are scored exactly.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping, Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

Vector = Union[Sequence[float], np.ndarray]

# bucket keys are packed into an int64
_MAX_HASH_BITS = 62


@dataclass
class SimilarityResult:
    id: str
    similarity: float


@dataclass
class DuplicatePair:
    id1: str
    id2: str
    similarity: float


@dataclass
class LSHOptions:
    """Tuning for duplicate detection.

    More bits per table means smaller buckets (faster, lower recall);
    more tables means better recall at the cost of memory.
    """

    lsh_threshold: int = 200
    num_hash_bits: int = 10
    num_tables: int = 6
    seed: int = 42


def _as_array(vector: Vector) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64).ravel()


def cosine_similarity(vec1: Vector, vec2: Vector) -> float:
    """Cosine of the angle between two vectors, in [-1, 1].

    Returns 0.0 when either vector is all zeros. Each vector is scaled by
    its largest component first so that very large or very small
    magnitudes neither overflow nor underflow.
    """
    a = _as_array(vec1)
    b = _as_array(vec2)
    if a.size == 0 or b.size == 0:
        raise ValueError("Vectors cannot be empty")
    if a.size != b.size:
        raise ValueError(f"Vectors must have same length ({a.size} != {b.size})")
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        raise ValueError("Vectors must contain only finite values")

    scale_a = np.max(np.abs(a))
    scale_b = np.max(np.abs(b))
    if scale_a == 0 or scale_b == 0:
        return 0.0
    a = a / scale_a
    b = b / scale_b
    similarity = float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))
    return float(np.clip(similarity, -1.0, 1.0))


def normalize(vector: Vector) -> np.ndarray:
    """Unit-length copy of ``vector``; a zero vector stays zero."""
    arr = _as_array(vector)
    scale = np.max(np.abs(arr)) if arr.size else 0.0
    if scale == 0:
        return arr.copy()
    arr = arr / scale
    return arr / np.linalg.norm(arr)


def find_similar_memories(
    query: Vector,
    embeddings: Mapping[str, Vector],
    threshold: float = 0.5,
    limit: int | None = None,
    exclude_id: str | None = None,
) -> list[SimilarityResult]:
    """Memories at or above ``threshold``, most similar first.

    Embeddings whose dimension differs from the query are skipped.
    """
    query_arr = _as_array(query)
    results: list[SimilarityResult] = []
    for memory_id, embedding in embeddings.items():
        if memory_id == exclude_id:
            continue
        arr = _as_array(embedding)
        if arr.size != query_arr.size:
            logger.debug("Skipping %s: dimension %d != %d", memory_id, arr.size, query_arr.size)
            continue
        similarity = cosine_similarity(query_arr, arr)
        if similarity >= threshold:
            results.append(SimilarityResult(memory_id, similarity))
    results.sort(key=lambda r: r.similarity, reverse=True)
    return results[:limit] if limit is not None else results


def rank_by_similarity(query: Vector, candidates: Mapping[str, Vector]) -> list[SimilarityResult]:
    """Score every candidate against the query, most similar first, without filtering."""
    results = [
        SimilarityResult(memory_id, cosine_similarity(query, embedding))
        for memory_id, embedding in candidates.items()
    ]
    results.sort(key=lambda r: r.similarity, reverse=True)
    return results


def average_k_nearest_similarity(
    target_id: str,
    embeddings: Mapping[str, Vector],
    k: int = 5,
) -> float:
    """Mean similarity of a memory to its ``k`` nearest neighbours, excluding itself."""
    target = embeddings.get(target_id)
    if target is None or k <= 0:
        return 0.0
    neighbours = find_similar_memories(
        target, embeddings, threshold=-1.0, limit=k, exclude_id=target_id
    )
    if not neighbours:
        return 0.0
    return sum(n.similarity for n in neighbours) / len(neighbours)


# ── Duplicate detection ───────────────────────────────────────


def _unit_matrix(vectors: list[np.ndarray]) -> np.ndarray:
    matrix = np.vstack(vectors)
    scale = np.max(np.abs(matrix), axis=1, keepdims=True)
    scale[scale == 0] = 1.0
    matrix = matrix / scale
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _pair(id_a: str, id_b: str, similarity: float) -> DuplicatePair:
    if id_b < id_a:
        id_a, id_b = id_b, id_a
    return DuplicatePair(id_a, id_b, float(min(similarity, 1.0)))


def _duplicates_brute_force(
    ids: list[str], matrix: np.ndarray, threshold: float
) -> list[DuplicatePair]:
    scores = matrix @ matrix.T
    rows, cols = np.triu_indices(len(ids), k=1)
    hits = scores[rows, cols] >= threshold
    return [
        _pair(ids[i], ids[j], scores[i, j]) for i, j in zip(rows[hits], cols[hits])
    ]


def build_lsh_buckets(
    matrix: np.ndarray, options: LSHOptions
) -> list[dict[int, list[int]]]:
    """Hash each row into one bucket per table.

    Table ``t`` draws its hyperplanes from a generator seeded with
    ``seed + t * 1000``, so bucket assignment is reproducible. Bit ``i``
    is set when the vector lies on the non-negative side of hyperplane ``i``.
    """
    bits = max(1, min(options.num_hash_bits, _MAX_HASH_BITS))
    weights = np.left_shift(np.int64(1), np.arange(bits, dtype=np.int64))
    tables: list[dict[int, list[int]]] = []
    for t in range(max(1, options.num_tables)):
        rng = np.random.default_rng(options.seed + t * 1000)
        planes = rng.standard_normal((bits, matrix.shape[1]))
        planes /= np.linalg.norm(planes, axis=1, keepdims=True)
        signs = (matrix @ planes.T) >= 0
        codes = signs.astype(np.int64) @ weights
        buckets: dict[int, list[int]] = defaultdict(list)
        for row, code in enumerate(codes.tolist()):
            buckets[code].append(row)
        tables.append(buckets)
    return tables


def _duplicates_lsh(
    ids: list[str], matrix: np.ndarray, threshold: float, options: LSHOptions
) -> list[DuplicatePair]:
    candidates: set[tuple[int, int]] = set()
    for buckets in build_lsh_buckets(matrix, options):
        for members in buckets.values():
            if len(members) < 2:
                continue
            for a in range(len(members)):
                for b in range(a + 1, len(members)):
                    candidates.add((members[a], members[b]))

    duplicates: list[DuplicatePair] = []
    for i, j in candidates:
        similarity = float(np.dot(matrix[i], matrix[j]))
        if similarity >= threshold:
            duplicates.append(_pair(ids[i], ids[j], similarity))
    logger.debug("LSH verified %d candidate pairs for %d vectors", len(candidates), len(ids))
    return duplicates


def find_potential_duplicates(
    embeddings: Mapping[str, Vector],
    threshold: float = 0.92,
    limit: int | None = None,
    options: LSHOptions | None = None,
) -> list[DuplicatePair]:
    """Pairs of memories whose similarity is at or above ``threshold``.

    Each unordered pair is reported once with ``id1 < id2``, most similar
    first. Vectors are compared only with others of the same dimension.
    """
    options = options or LSHOptions()
    groups: dict[int, tuple[list[str], list[np.ndarray]]] = {}
    for memory_id, embedding in embeddings.items():
        arr = _as_array(embedding)
        if arr.size == 0:
            continue
        ids, vectors = groups.setdefault(arr.size, ([], []))
        ids.append(memory_id)
        vectors.append(arr)

    duplicates: list[DuplicatePair] = []
    for ids, vectors in groups.values():
        if len(ids) < 2:
            continue
        matrix = _unit_matrix(vectors)
        if len(ids) < options.lsh_threshold:
            duplicates.extend(_duplicates_brute_force(ids, matrix, threshold))
        else:
            duplicates.extend(_duplicates_lsh(ids, matrix, threshold, options))

    duplicates.sort(key=lambda d: (-d.similarity, d.id1, d.id2))
    return duplicates[:limit] if limit is not None else duplicates
