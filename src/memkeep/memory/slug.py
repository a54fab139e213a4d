"""Memory id derivation: ``<type>-<slug>`` with numeric collision suffixes."""

from __future__ import annotations

import re
import unicodedata
from typing import Callable

from memkeep.types import MemoryType

MAX_SLUG_LENGTH = 80
MAX_COLLISIONS = 1000

_SLUG_VALID = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def slugify(title: str) -> str:
    """Lowercase, ASCII-folded, hyphen-separated slug of a title."""
    slug = unicodedata.normalize("NFD", title.strip().lower())
    slug = "".join(ch for ch in slug if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if len(slug) > MAX_SLUG_LENGTH:
        slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "untitled"


def generate_id(memory_type: str | MemoryType, title: str) -> str:
    return f"{MemoryType(memory_type).value}-{slugify(title)}"


def generate_unique_id(
    memory_type: str | MemoryType,
    title: str,
    exists: Callable[[str], bool],
) -> str:
    """Derive an id, appending ``-1``, ``-2``... while ``exists(id)`` is true."""
    base_id = generate_id(memory_type, title)
    if not exists(base_id):
        return base_id
    for suffix in range(1, MAX_COLLISIONS + 1):
        candidate = f"{base_id}-{suffix}"
        if not exists(candidate):
            return candidate
    raise RuntimeError(f"Too many collisions for ID: {base_id}")


def is_valid_slug(slug: str) -> bool:
    return bool(_SLUG_VALID.match(slug))


def parse_id(memory_id: str) -> tuple[MemoryType, str] | None:
    """Split an id into its type prefix and slug, or None if the prefix is unknown."""
    for memory_type in MemoryType:
        prefix = f"{memory_type.value}-"
        if memory_id.startswith(prefix):
            return memory_type, memory_id[len(prefix):]
    return None
