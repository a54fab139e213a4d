"""Core value types: enums, memory headers and index entries."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any


class MemoryType(str, Enum):
    """Kinds of memory. Breadcrumbs are temporary; the rest are permanent."""

    DECISION = "decision"
    LEARNING = "learning"
    ARTIFACT = "artifact"
    GOTCHA = "gotcha"
    BREADCRUMB = "breadcrumb"
    HUB = "hub"

    @property
    def subdirectory(self) -> str:
        return "temporary" if self is MemoryType.BREADCRUMB else "permanent"


class Scope(str, Enum):
    """Physical storage tiers, listed in merge precedence order."""

    ENTERPRISE = "enterprise"
    LOCAL = "local"
    PROJECT = "project"
    GLOBAL = "global"


SCOPE_PRECEDENCE: tuple[Scope, ...] = (
    Scope.ENTERPRISE,
    Scope.LOCAL,
    Scope.PROJECT,
    Scope.GLOBAL,
)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EdgeType(str, Enum):
    """Well-known edge relations. Any non-empty string is accepted as a relation."""

    RELATES_TO = "relates-to"
    INFORMED_BY = "informed-by"
    IMPLEMENTS = "implements"
    SUPERSEDES = "supersedes"
    WARNS = "warns"
    DOCUMENTS = "documents"
    EXTENDS = "extends"
    DEPENDS_ON = "depends-on"
    CONTRADICTS = "contradicts"
    AUTO_LINKED = "auto-linked-by-similarity"


def parse_memory_type(value: str | MemoryType) -> MemoryType | None:
    try:
        return MemoryType(value)
    except ValueError:
        return None


def parse_scope(value: str | Scope | None) -> Scope | None:
    if value is None:
        return None
    try:
        return Scope(value)
    except ValueError:
        return None


def subdirectory_for(memory_type: str) -> str:
    """Storage subdirectory for a type name; unknown types are permanent."""
    parsed = parse_memory_type(memory_type)
    return parsed.subdirectory if parsed else "permanent"


@dataclass
class Frontmatter:
    """Normalised header of a memory file.

    Tags and links are always lists of strings here, whatever shape they
    had on disk. Fields the codec does not model are kept in ``extra`` so
    that a parse/serialise cycle does not drop them.
    """

    title: str
    type: str
    tags: list[str] = field(default_factory=list)
    created: str | None = None
    updated: str | None = None
    id: str | None = None
    scope: str | None = None
    severity: str | None = None
    links: list[str] = field(default_factory=list)
    source: str | None = None
    embedding: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> Frontmatter:
        return replace(self, **changes)


@dataclass
class Memory:
    """A memory loaded from disk: header, body and where it lives."""

    id: str
    frontmatter: Frontmatter
    content: str
    scope: str
    path: Path

    @property
    def title(self) -> str:
        return self.frontmatter.title

    @property
    def type(self) -> str:
        return self.frontmatter.type

    @property
    def tags(self) -> list[str]:
        return self.frontmatter.tags


@dataclass
class IndexEntry:
    """Denormalised projection of one memory's header."""

    id: str
    type: str
    title: str
    tags: list[str] = field(default_factory=list)
    created: str = ""
    updated: str = ""
    scope: str = Scope.GLOBAL.value
    relative_path: str = ""
    severity: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset(
        {"id", "type", "title", "tags", "created", "updated", "scope", "relativePath", "severity"}
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexEntry:
        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        elif not isinstance(tags, list):
            tags = []
        severity = data.get("severity")
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "")),
            title=str(data.get("title", "")),
            tags=[str(t) for t in tags],
            created=str(data.get("created") or ""),
            updated=str(data.get("updated") or ""),
            scope=str(data.get("scope") or Scope.GLOBAL.value),
            relative_path=str(data.get("relativePath") or ""),
            severity=severity if isinstance(severity, str) else None,
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "tags": list(self.tags),
            "created": self.created,
            "updated": self.updated,
            "scope": self.scope,
            "relativePath": self.relative_path,
        }
        if self.severity:
            data["severity"] = self.severity
        data.update(self.extra)
        return data

    def with_changes(self, **changes: Any) -> IndexEntry:
        return replace(self, **changes)


@dataclass
class MemoryIndex:
    """The per-root index document held in memory."""

    version: str
    last_updated: str
    entries: list[IndexEntry] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, memory_id: str) -> IndexEntry | None:
        for entry in self.entries:
            if entry.id == memory_id:
                return entry
        return None

    def ids(self) -> list[str]:
        return [entry.id for entry in self.entries]

    def __contains__(self, memory_id: object) -> bool:
        return any(entry.id == memory_id for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "version": self.version,
                "lastUpdated": self.last_updated,
                "entries": [entry.to_dict() for entry in self.entries],
            }
        )
        return data
