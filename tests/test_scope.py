"""Tests for scope resolution, enterprise discovery and cross-scope merging."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from memkeep.config import MemkeepConfig, ScopeConfig
from memkeep.errors import ValidationError
from memkeep.memory.index import index_path
from memkeep.scope.enterprise import (
    ENTERPRISE_PATH_ENV_VAR,
    get_enterprise_path,
    validate_enterprise_path,
)
from memkeep.scope.resolver import (
    LOCAL_GITIGNORE_ENTRY,
    ScopeContext,
    ensure_local_scope_gitignored,
    find_git_root,
    get_all_accessible_scopes,
    get_default_scope,
    local_scope_path,
    merge_memories_from_scopes,
    open_store,
    project_scope_path,
    resolve_scope,
)
from memkeep.types import Scope


@pytest.fixture(autouse=True)
def _no_enterprise_env(monkeypatch):
    monkeypatch.delenv(ENTERPRISE_PATH_ENV_VAR, raising=False)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    (root / "src" / "pkg").mkdir(parents=True)
    return root


@pytest.fixture
def context(repo: Path, tmp_path: Path) -> ScopeContext:
    return ScopeContext(cwd=repo / "src" / "pkg", global_path=tmp_path / "home" / "memory")


@pytest.fixture
def enterprise_dir(tmp_path: Path) -> Path:
    path = tmp_path / "enterprise"
    path.mkdir()
    return path


class TestPaths:
    def test_git_root_found_from_subdirectory(self, repo: Path):
        assert find_git_root(repo / "src" / "pkg") == repo.resolve()

    def test_no_git_root(self, tmp_path: Path):
        plain = tmp_path / "plain"
        plain.mkdir()
        assert find_git_root(plain) is None

    def test_project_and_local_paths(self, repo: Path):
        cwd = repo / "src"
        assert project_scope_path(cwd) == repo.resolve() / ".memkeep" / "memory"
        assert local_scope_path(cwd) == repo.resolve() / ".memkeep" / "memory" / "local"

    def test_project_without_git_uses_cwd(self, tmp_path: Path):
        plain = tmp_path / "plain"
        plain.mkdir()
        assert project_scope_path(plain) == plain.resolve() / ".memkeep" / "memory"


class TestDefaultScope:
    def test_project_inside_git(self, context: ScopeContext):
        assert get_default_scope(context) is Scope.PROJECT

    def test_global_outside_git(self, tmp_path: Path):
        plain = tmp_path / "plain"
        plain.mkdir()
        context = ScopeContext(cwd=plain, global_path=tmp_path / "g")
        assert get_default_scope(context) is Scope.GLOBAL

    def test_configured_default_wins(self, context: ScopeContext):
        context.default_scope = Scope.LOCAL
        assert get_default_scope(context) is Scope.LOCAL


class TestResolve:
    def test_global(self, context: ScopeContext):
        resolution = resolve_scope(context, "global")
        assert resolution.ok
        assert resolution.path == context.global_path

    def test_unknown_scope(self, context: ScopeContext):
        resolution = resolve_scope(context, "team")
        assert not resolution.ok
        assert "Unknown scope" in resolution.error

    def test_enterprise_disabled(self, context: ScopeContext):
        resolution = resolve_scope(context, Scope.ENTERPRISE)
        assert not resolution.ok
        assert "disabled" in resolution.error

    def test_enterprise_without_path(self, context: ScopeContext):
        context.enterprise_enabled = True
        assert "no path" in resolve_scope(context, "enterprise").error

    def test_enterprise_missing_directory(self, context: ScopeContext, tmp_path: Path):
        context.enterprise_enabled = True
        context.enterprise_path = tmp_path / "nowhere"
        assert "does not exist" in resolve_scope(context, "enterprise").error

    def test_enterprise_ok(self, context: ScopeContext, enterprise_dir: Path):
        context.enterprise_enabled = True
        context.enterprise_path = enterprise_dir
        resolution = resolve_scope(context, "enterprise")
        assert resolution.scope is Scope.ENTERPRISE
        assert resolution.path == enterprise_dir

    def test_accessible_scopes(self, context: ScopeContext, enterprise_dir: Path):
        assert get_all_accessible_scopes(context) == [Scope.LOCAL, Scope.PROJECT, Scope.GLOBAL]
        context.enterprise_enabled = True
        context.enterprise_path = enterprise_dir
        assert get_all_accessible_scopes(context)[0] is Scope.ENTERPRISE

    def test_from_config(self, repo: Path, enterprise_dir: Path, tmp_path: Path):
        config = MemkeepConfig(
            scopes=ScopeConfig(enterprise_enabled=True, enterprise_path=enterprise_dir),
            global_dir=tmp_path / "g",
        )
        context = ScopeContext.from_config(config, cwd=repo)
        assert context.enterprise_path == enterprise_dir
        assert context.global_path == tmp_path / "g"


class TestEnterprise:
    def test_env_var_first(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv(ENTERPRISE_PATH_ENV_VAR, str(tmp_path / "from-env"))
        assert get_enterprise_path(tmp_path / "configured") == tmp_path / "from-env"

    def test_configured_path(self, tmp_path: Path):
        assert get_enterprise_path(tmp_path / "configured") == tmp_path / "configured"

    def test_managed_settings(self, tmp_path: Path):
        settings = tmp_path / "managed-settings.json"
        settings.write_text(
            json.dumps({"env": {ENTERPRISE_PATH_ENV_VAR: str(tmp_path / "shared")}}),
            encoding="utf-8",
        )
        assert get_enterprise_path(search_path=tmp_path) == tmp_path / "shared"

    def test_validate_file_is_not_directory(self, tmp_path: Path):
        path = tmp_path / "file"
        path.write_text("x", encoding="utf-8")
        result = validate_enterprise_path(path)
        assert not result.valid
        assert "not a directory" in result.error

    def test_validate_ok(self, enterprise_dir: Path):
        assert validate_enterprise_path(enterprise_dir).valid


class TestOpenStore:
    def test_local_scope_is_gitignored(self, context: ScopeContext, repo: Path):
        store = open_store(context, "local")
        assert store.scope == "local"
        assert LOCAL_GITIGNORE_ENTRY in (repo / ".gitignore").read_text(encoding="utf-8")
        assert ensure_local_scope_gitignored(context.cwd) is False

    def test_gitignore_appends_to_existing(self, context: ScopeContext, repo: Path):
        (repo / ".gitignore").write_text("node_modules/", encoding="utf-8")
        assert ensure_local_scope_gitignored(context.cwd) is True
        lines = (repo / ".gitignore").read_text(encoding="utf-8").splitlines()
        assert lines[0] == "node_modules/"
        assert lines[-1] == LOCAL_GITIGNORE_ENTRY

    def test_unresolvable_scope_raises(self, context: ScopeContext):
        with pytest.raises(ValidationError, match="disabled"):
            open_store(context, "enterprise")

    def test_default_scope(self, context: ScopeContext):
        assert open_store(context).scope == "project"


class TestMerge:
    def test_precedence_order(self, context: ScopeContext, enterprise_dir: Path):
        context.enterprise_enabled = True
        context.enterprise_path = enterprise_dir
        for scope in ("global", "project", "local", "enterprise"):
            open_store(context, scope).write("learning", f"From {scope}", "body")

        merged = merge_memories_from_scopes(context)
        assert [e.scope for e in merged.memories] == ["enterprise", "local", "project", "global"]
        assert [e.id for e in merged.memories][0] == "learning-from-enterprise"
        assert merged.scopes_searched == [Scope.ENTERPRISE, Scope.LOCAL, Scope.PROJECT, Scope.GLOBAL]
        assert merged.errors == []

    def test_missing_roots_contribute_nothing(self, context: ScopeContext):
        open_store(context, "global").write("hub", "Only global", "body")
        merged = merge_memories_from_scopes(context)
        assert [e.id for e in merged.memories] == ["hub-only-global"]
        assert Scope.ENTERPRISE not in merged.scopes_searched

    def test_inaccessible_enterprise_is_omitted(self, context: ScopeContext, tmp_path: Path):
        context.enterprise_enabled = True
        context.enterprise_path = tmp_path / "gone"
        merged = merge_memories_from_scopes(context)
        assert Scope.ENTERPRISE not in merged.scopes_searched

    def test_entries_tagged_with_source_scope(self, context: ScopeContext):
        store = open_store(context, "project")
        store.write("learning", "Shared", "body")
        merged = merge_memories_from_scopes(context)
        assert merged.memories[0].scope == "project"

    def test_corrupt_index_reported(self, context: ScopeContext):
        store = open_store(context, "global")
        store.write("learning", "Kept", "body")
        index_path(store.root).write_text('{"entries": 5}', encoding="utf-8")
        merged = merge_memories_from_scopes(context)
        assert merged.memories == []
        assert merged.errors[0]["scope"] == "global"

    def test_undecodable_index_does_not_abort_merge(self, context: ScopeContext):
        open_store(context, "project").write("learning", "Survives", "body")
        store = open_store(context, "global")
        store.write("learning", "Lost", "body")
        index_path(store.root).write_bytes(b'{"entries": [\xff\xfe]}')
        merged = merge_memories_from_scopes(context)
        assert [e.id for e in merged.memories] == ["learning-survives"]
        assert merged.errors[0]["scope"] == "global"
        assert "corrupt" in merged.errors[0]["error"]
