"""Exception hierarchy shared by every memkeep component."""

from __future__ import annotations

from pathlib import Path


class MemkeepError(Exception):
    """Base class for all memkeep errors."""


class ValidationError(MemkeepError):
    """A required field or filter is missing or invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class FrontmatterError(ValidationError):
    """The structured header of a memory file cannot be parsed."""


class NotFoundError(MemkeepError):
    """The requested memory or graph node does not exist."""

    def __init__(self, memory_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class CorruptionError(MemkeepError):
    """A stored document has no usable structure to recover from."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class GraphError(MemkeepError):
    """A graph mutation was rejected."""


class GraphIntegrityError(GraphError):
    """An edge would dangle or point at its own source."""


class ProviderError(MemkeepError):
    """The embedding provider failed to produce a vector."""
