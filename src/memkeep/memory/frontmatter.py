"""YAML frontmatter codec for memory files.

A memory file is a YAML header between ``---`` lines, a blank line, and a
free-text body. Parsing is tolerant of loosely typed values (numeric
titles, dates, a single string where a list is expected) and strict only
about header syntax and the two required fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

import frontmatter
import yaml
from frontmatter.default_handlers import YAMLHandler

from memkeep.errors import FrontmatterError, ValidationError
from memkeep.types import Frontmatter

_HANDLER = YAMLHandler()

_MODELED = (
    "id",
    "title",
    "type",
    "scope",
    "created",
    "updated",
    "tags",
    "severity",
    "links",
    "source",
    "embedding",
    "meta",
)


@dataclass
class ParsedMemory:
    frontmatter: Frontmatter
    content: str


def _scalar(value: Any) -> str | None:
    """Coerce a loosely typed scalar to a string, keeping None."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _string_list(value: Any) -> list[str]:
    """Normalise string-or-sequence values to a de-duplicated list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = [_scalar(v) for v in value]
    else:
        items = [_scalar(value)]
    result: list[str] = []
    for item in items:
        if item is None:
            continue
        item = item.strip()
        if item and item not in result:
            result.append(item)
    return result


def _plain(value: Any) -> Any:
    """Make YAML-native values (dates) JSON and YAML safe."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def frontmatter_from_dict(data: dict[str, Any]) -> Frontmatter:
    """Build a normalised Frontmatter from a raw header mapping.

    Raises ValidationError naming ``type`` or ``title`` when either is
    missing or blank.
    """
    memory_type = _scalar(data.get("type"))
    if not memory_type or not memory_type.strip():
        raise ValidationError("Invalid frontmatter: type is required", field="type")
    title = _scalar(data.get("title"))
    if not title or not title.strip():
        raise ValidationError("Invalid frontmatter: title is required", field="title")

    meta = data.get("meta")
    return Frontmatter(
        title=title,
        type=memory_type.strip(),
        tags=_string_list(data.get("tags")),
        created=_scalar(data.get("created")),
        updated=_scalar(data.get("updated")),
        id=_scalar(data.get("id")),
        scope=_scalar(data.get("scope")),
        severity=_scalar(data.get("severity")),
        links=_string_list(data.get("links")),
        source=_scalar(data.get("source")),
        embedding=_scalar(data.get("embedding")),
        meta=_plain(meta) if isinstance(meta, dict) else {},
        extra={str(k): _plain(v) for k, v in data.items() if k not in _MODELED},
    )


def frontmatter_to_dict(fm: Frontmatter) -> dict[str, Any]:
    """Header mapping in a stable, readable key order."""
    data: dict[str, Any] = {}
    if fm.id:
        data["id"] = fm.id
    data["title"] = fm.title
    data["type"] = fm.type
    if fm.scope:
        data["scope"] = fm.scope
    if fm.created is not None:
        data["created"] = fm.created
    if fm.updated is not None:
        data["updated"] = fm.updated
    data["tags"] = list(fm.tags)
    if fm.severity:
        data["severity"] = fm.severity
    if fm.links:
        data["links"] = list(fm.links)
    if fm.source:
        data["source"] = fm.source
    if fm.embedding:
        data["embedding"] = fm.embedding
    if fm.meta:
        data["meta"] = dict(fm.meta)
    for key, value in fm.extra.items():
        data.setdefault(key, value)
    return data


def split_header(text: str) -> tuple[dict[str, Any], str]:
    """Split raw file text into (header mapping, body).

    Raises FrontmatterError for missing or unterminated delimiters, YAML
    syntax errors, or a header that is not a mapping.
    """
    text = text.lstrip("\ufeff").strip()
    if not _HANDLER.detect(text):
        raise FrontmatterError("Invalid memory file format: missing frontmatter delimiters")
    try:
        header, body = _HANDLER.split(text)
    except ValueError as exc:
        raise FrontmatterError(
            "Invalid memory file format: unterminated frontmatter block"
        ) from exc
    try:
        data = _HANDLER.load(header)
    except yaml.YAMLError as exc:
        raise FrontmatterError(f"Invalid frontmatter YAML: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrontmatterError("Invalid frontmatter: must be a YAML mapping")
    return data, body.strip()


def parse_memory_text(text: str) -> ParsedMemory:
    """Parse a memory file into its normalised header and body."""
    data, body = split_header(text)
    return ParsedMemory(frontmatter=frontmatter_from_dict(data), content=body)


def parse_memory_file(path: Path) -> ParsedMemory:
    return parse_memory_text(path.read_text(encoding="utf-8"))


def serialize_memory(fm: Frontmatter, content: str) -> str:
    """Render a memory file. Inverse of :func:`parse_memory_text`."""
    post = frontmatter.Post(content.strip())
    post.metadata.update(frontmatter_to_dict(fm))
    return frontmatter.dumps(post, sort_keys=False) + "\n"
