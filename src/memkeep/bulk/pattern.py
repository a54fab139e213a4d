"""Select index entries by id glob, tags, type, scope and explicit ids.

Globs support ``*`` (any run of characters) and ``?`` (one character);
everything else matches literally and the whole id must match.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable

from memkeep.types import IndexEntry

DEFAULT_CACHE_SIZE = 100


@dataclass
class FilterCriteria:
    """What a bulk operation should act on. Empty fields do not filter."""

    pattern: str | None = None
    tags: list[str] = field(default_factory=list)
    type: str | None = None
    scope: str | None = None
    ids: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.pattern or self.tags or self.type or self.scope or self.ids)


def glob_to_regex(pattern: str) -> str:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return "^" + "".join(parts) + "$"


class PatternMatcher:
    """Filters index entries, memoising compiled globs.

    The cache holds at most ``max_size`` patterns; when full, the pattern
    inserted first is evicted.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._cache: OrderedDict[str, re.Pattern[str]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, pattern: str) -> bool:
        return pattern in self._cache

    def cached_patterns(self) -> list[str]:
        """Cached patterns, oldest first."""
        return list(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    def compile(self, pattern: str) -> re.Pattern[str]:
        compiled = self._cache.get(pattern)
        if compiled is None:
            if len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)
            compiled = re.compile(glob_to_regex(pattern))
            self._cache[pattern] = compiled
        return compiled

    def matches_glob(self, pattern: str, text: str) -> bool:
        return self.compile(pattern).match(text) is not None

    def filter(self, entries: Iterable[IndexEntry], criteria: FilterCriteria) -> list[IndexEntry]:
        """Entries passing every given criterion, in input order."""
        allowed = set(criteria.ids) if criteria.ids else None
        regex = self.compile(criteria.pattern) if criteria.pattern else None
        result = []
        for entry in entries:
            if regex is not None and regex.match(entry.id) is None:
                continue
            if criteria.tags and not all(tag in entry.tags for tag in criteria.tags):
                continue
            if criteria.type and entry.type != criteria.type:
                continue
            if criteria.scope and entry.scope != criteria.scope:
                continue
            if allowed is not None and entry.id not in allowed:
                continue
            result.append(entry)
        return result

    def count(self, entries: Iterable[IndexEntry], criteria: FilterCriteria) -> int:
        return len(self.filter(entries, criteria))
