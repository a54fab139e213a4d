"""Scope resolution: logical scope -> storage root, and cross-root merging.

Precedence for merged queries is enterprise -> local -> project -> global.
Project and local roots live under the enclosing git repository (or the
working directory when there is none):

    <repo>/.memkeep/memory/          project scope, tracked in git
    <repo>/.memkeep/memory/local/    local scope, gitignored
    ~/.memkeep/memory/               global scope
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from memkeep.config import MemkeepConfig
from memkeep.errors import ValidationError
from memkeep.memory.fsutil import DEFAULT_LOCK_TIMEOUT
from memkeep.memory.index import inspect_index
from memkeep.memory.store import MemoryStore
from memkeep.scope.enterprise import get_enterprise_path, validate_enterprise_path
from memkeep.search.embedding import MAX_EMBEDDING_CHARS, EmbeddingProvider
from memkeep.search.similarity import LSHOptions
from memkeep.types import SCOPE_PRECEDENCE, IndexEntry, Scope, parse_scope

logger = logging.getLogger(__name__)

PROJECT_DIRNAME = ".memkeep"
LOCAL_GITIGNORE_ENTRY = ".memkeep/memory/local/"


@dataclass
class ScopeContext:
    """Everything needed to map scopes to storage roots."""

    cwd: Path
    global_path: Path
    enterprise_enabled: bool = False
    enterprise_path: Path | None = None
    default_scope: Scope | None = None

    @classmethod
    def from_config(cls, config: MemkeepConfig, cwd: Path | None = None) -> ScopeContext:
        enterprise_path = None
        if config.scopes.enterprise_enabled:
            enterprise_path = get_enterprise_path(config.scopes.enterprise_path)
        return cls(
            cwd=cwd or Path.cwd(),
            global_path=config.global_dir,
            enterprise_enabled=config.scopes.enterprise_enabled,
            enterprise_path=enterprise_path,
            default_scope=config.scopes.default,
        )


@dataclass
class ScopeResolution:
    scope: Scope | None
    path: Path | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.scope is not None


@dataclass
class MergeResult:
    memories: list[IndexEntry] = field(default_factory=list)
    scopes_searched: list[Scope] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


# ── Git helpers ───────────────────────────────────────────────


def find_git_root(start: Path) -> Path | None:
    """Walk up from ``start`` to the nearest directory containing ``.git``."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def is_in_git_repository(path: Path) -> bool:
    return find_git_root(path) is not None


def project_base(cwd: Path) -> Path:
    return find_git_root(cwd) or cwd.resolve()


def project_scope_path(cwd: Path) -> Path:
    return project_base(cwd) / PROJECT_DIRNAME / "memory"


def local_scope_path(cwd: Path) -> Path:
    return project_scope_path(cwd) / "local"


def ensure_local_scope_gitignored(cwd: Path) -> bool:
    """Add the local scope directory to the repository's .gitignore.

    Returns True if the file was changed. Outside a git repository this
    does nothing.
    """
    git_root = find_git_root(cwd)
    if git_root is None:
        return False
    gitignore = git_root / ".gitignore"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    lines = {line.strip() for line in existing.splitlines()}
    if LOCAL_GITIGNORE_ENTRY in lines or LOCAL_GITIGNORE_ENTRY.rstrip("/") in lines:
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    gitignore.write_text(
        f"{existing}{prefix}# memkeep local scope\n{LOCAL_GITIGNORE_ENTRY}\n", encoding="utf-8"
    )
    logger.info("Added %s to %s", LOCAL_GITIGNORE_ENTRY, gitignore)
    return True


# ── Resolution ────────────────────────────────────────────────


def get_default_scope(context: ScopeContext) -> Scope:
    """Configured default, else project inside a git repository, else global."""
    if context.default_scope is not None:
        return context.default_scope
    if is_in_git_repository(context.cwd):
        return Scope.PROJECT
    return Scope.GLOBAL


def _resolve_enterprise(context: ScopeContext) -> ScopeResolution:
    if not context.enterprise_enabled:
        return ScopeResolution(
            None,
            error=(
                "Enterprise scope is disabled. Enable it in memkeep.toml with "
                "[scopes] enterprise_enabled = true"
            ),
        )
    if context.enterprise_path is None:
        return ScopeResolution(
            None,
            error=(
                "Enterprise scope is enabled but no path is configured. "
                "Set MEMKEEP_ENTERPRISE_PATH or [scopes] enterprise_path"
            ),
        )
    validation = validate_enterprise_path(context.enterprise_path)
    if not validation.valid:
        return ScopeResolution(None, error=validation.error or "Enterprise path is inaccessible")
    return ScopeResolution(Scope.ENTERPRISE, context.enterprise_path)


def resolve_scope(context: ScopeContext, requested: Scope | str | None = None) -> ScopeResolution:
    """Map a requested scope (or the default) to its storage root."""
    if requested is None:
        requested = get_default_scope(context)
    scope = parse_scope(requested)
    if scope is None:
        return ScopeResolution(None, error=f"Unknown scope: {requested}")

    if scope is Scope.ENTERPRISE:
        return _resolve_enterprise(context)
    if scope is Scope.LOCAL:
        return ScopeResolution(scope, local_scope_path(context.cwd))
    if scope is Scope.PROJECT:
        return ScopeResolution(scope, project_scope_path(context.cwd))
    return ScopeResolution(scope, context.global_path)


def get_scope_path(context: ScopeContext, scope: Scope) -> Path | None:
    return resolve_scope(context, scope).path


def get_all_accessible_scopes(context: ScopeContext) -> list[Scope]:
    """Scopes usable in this context, in precedence order."""
    scopes: list[Scope] = []
    for scope in SCOPE_PRECEDENCE:
        if scope is Scope.ENTERPRISE and not _resolve_enterprise(context).ok:
            continue
        scopes.append(scope)
    return scopes


def merge_memories_from_scopes(context: ScopeContext) -> MergeResult:
    """Concatenate every accessible root's index in precedence order.

    Each entry is tagged with the scope of the root it came from. Roots
    that do not exist yet contribute nothing; unreadable indexes are
    reported in ``errors`` instead of failing the merge. A root shared by
    two scopes is read only once.
    """
    result = MergeResult()
    seen_roots: set[Path] = set()
    for scope in get_all_accessible_scopes(context):
        result.scopes_searched.append(scope)
        root = get_scope_path(context, scope)
        if root is None or not root.is_dir():
            continue
        resolved = root.resolve()
        if resolved in seen_roots:
            continue
        seen_roots.add(resolved)
        try:
            loaded = inspect_index(root)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read %s scope at %s: %s", scope.value, root, exc)
            result.errors.append({"scope": scope.value, "error": str(exc)})
            continue
        if loaded.needs_rebuild:
            result.errors.append(
                {"scope": scope.value, "error": f"index is {loaded.state.value}: {loaded.error}"}
            )
        for entry in loaded.index.entries:
            result.memories.append(entry.with_changes(scope=scope.value))
    return result


def open_store(
    context: ScopeContext,
    requested: Scope | str | None = None,
    embedder: EmbeddingProvider | None = None,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    max_embedding_chars: int = MAX_EMBEDDING_CHARS,
    lsh_options: LSHOptions | None = None,
) -> MemoryStore:
    """Resolve a scope and open a store on its root.

    Raises ValidationError when the scope cannot be resolved. Opening the
    local scope makes sure it is gitignored.
    """
    resolution = resolve_scope(context, requested)
    if not resolution.ok or resolution.path is None:
        raise ValidationError(resolution.error or f"Cannot resolve scope: {requested}", field="scope")
    if resolution.scope is Scope.LOCAL:
        ensure_local_scope_gitignored(context.cwd)
    return MemoryStore(
        resolution.path,
        resolution.scope,
        embedder,
        lock_timeout,
        max_embedding_chars,
        lsh_options,
    )
