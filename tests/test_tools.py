"""Tests for the memory tools and the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from memkeep.__main__ import run
from memkeep.config import MemkeepConfig, ScopeConfig
from memkeep.errors import ValidationError
from memkeep.memory.store import MemoryStore
from memkeep.scope.enterprise import ENTERPRISE_PATH_ENV_VAR
from memkeep.scope.resolver import ScopeContext
from memkeep.tools.memory_tools import build_memory_tools, get_memory_tools
from memkeep.types import Scope


@pytest.fixture(autouse=True)
def _no_enterprise_env(monkeypatch):
    monkeypatch.delenv(ENTERPRISE_PATH_ENV_VAR, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory")


@pytest.fixture
def tools(store: MemoryStore) -> dict:
    return get_memory_tools(store)


class TestMemoryTools:
    def test_write_and_read(self, tools):
        written = tools["write_memory"](type="decision", title="Use queues", content="Async all the things")
        assert written["status"] == "success"
        assert written["id"] == "decision-use-queues"
        read = tools["read_memory"](id="decision-use-queues")
        assert read["content"] == "Async all the things"
        assert read["type"] == "decision"

    def test_errors_become_results(self, tools):
        result = tools["read_memory"](id="learning-missing")
        assert result == {"status": "error", "error": "Memory not found: learning-missing"}
        result = tools["write_memory"](type="wisdom", title="T", content="c")
        assert result["status"] == "error"
        assert "type must be one of" in result["error"]

    def test_unexpected_errors_are_caught(self, tools, store: MemoryStore, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "list", boom)
        result = tools["list_memories"]()
        assert result["status"] == "error"
        assert "disk on fire" in result["error"]

    def test_tag_search_and_list(self, tools):
        tools["write_memory"](type="learning", title="Redis", content="in-memory store")
        assert tools["tag_memory"](id="learning-redis", tags=["cache"])["tags"] == ["cache"]
        assert tools["list_memories"](tags=["cache"])["count"] == 1
        search = tools["search_memories"](query="redis")
        assert search["results"][0]["id"] == "learning-redis"
        assert tools["untag_memory"](id="learning-redis", tags=["cache"])["tags"] == []

    def test_link_impact_unlink(self, tools):
        tools["write_memory"](type="hub", title="Hub", content="h")
        tools["write_memory"](type="learning", title="Leaf", content="l")
        assert tools["link_memories"](source="hub-hub", target="learning-leaf")["created"] is True
        impact = tools["memory_impact"](id="hub-hub")
        assert impact["broken_edges"] == 1
        assert impact["orphaned_nodes"] == ["learning-leaf"]
        assert tools["unlink_memories"](source="hub-hub", target="learning-leaf")["removed"] is True

    def test_maintenance_tools(self, tools):
        tools["write_memory"](type="learning", title="Old", content="body")
        renamed = tools["rename_memory"](id="learning-old", new_id="learning-new")
        assert renamed["new_id"] == "learning-new"
        promoted = tools["promote_memory"](id="learning-new", target_type="gotcha")
        assert promoted["new_id"] == "gotcha-new"
        assert tools["rebuild_index"]()["entries_count"] == 1
        assert tools["sync_memories"](dry_run=True)["dry_run"] is True

    def test_bulk_tools_are_exposed(self, tools):
        tools["write_memory"](type="decision", title="Foo", content="f")
        tools["write_memory"](type="decision", title="Bar", content="b")
        result = tools["bulk_delete"](pattern="decision-*")
        assert result["deleted_count"] == 2

    def test_cross_scope_tools_need_context(self, tools):
        assert tools["list_all_scopes"]()["status"] == "error"
        tools["write_memory"](type="learning", title="A", content="a")
        assert tools["move_memory"](id="learning-a", target_scope="project")["status"] == "error"

    def test_duplicates_without_embeddings(self, tools):
        assert tools["find_duplicates"]() == {"status": "success", "count": 0, "pairs": []}

    def test_link_suggestions_without_embeddings(self, tools):
        result = tools["suggest_links"](auto_link=True)
        assert result["status"] == "success"
        assert (result["count"], result["created"]) == (0, 0)

    def test_health(self, tools):
        tools["write_memory"](type="learning", title="A", content="a")
        tools["write_memory"](type="hub", title="Home", content="x", links=["learning-a"])
        result = tools["check_health"]()
        assert result["status"] == "success"
        assert result["health"] == "healthy"
        assert result["score"] == 100


class TestCrossScope:
    def test_move_between_scopes(self, tmp_path: Path):
        repo = tmp_path / "repo"
        (repo / ".git").mkdir(parents=True)
        context = ScopeContext(cwd=repo, global_path=tmp_path / "global")
        store = MemoryStore(tmp_path / "global", Scope.GLOBAL)
        tools = get_memory_tools(store, context)
        tools["write_memory"](type="learning", title="Portable", content="moves around")

        moved = tools["move_memory"](id="learning-portable", target_scope="project")
        assert moved["status"] == "success"
        assert (repo / ".memkeep" / "memory" / "permanent" / "learning-portable.md").exists()

        merged = tools["list_all_scopes"]()
        assert [(m["id"], m["scope"]) for m in merged["memories"]] == [("learning-portable", "project")]


class TestBuildTools:
    def _config(self, tmp_path: Path) -> MemkeepConfig:
        return MemkeepConfig(
            scopes=ScopeConfig(default=Scope.GLOBAL),
            global_dir=tmp_path / "global",
            lock_timeout=3.0,
        )

    def test_uses_configured_store(self, tmp_path: Path):
        config = self._config(tmp_path)
        config.similarity.lsh_threshold = 10
        tools = build_memory_tools(config, cwd=tmp_path)
        tools["write_memory"](type="hub", title="Home", content="x")
        assert (tmp_path / "global" / "permanent" / "hub-home.md").exists()

    def test_unknown_scope_raises(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            build_memory_tools(self._config(tmp_path), cwd=tmp_path, scope="team")


class TestCommandLine:
    @pytest.fixture(autouse=True)
    def _env(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MEMKEEP_GLOBAL_DIR", str(tmp_path / "global"))
        monkeypatch.setenv("MEMKEEP_DEFAULT_SCOPE", "global")
        monkeypatch.delenv("MEMKEEP_ENTERPRISE_ENABLED", raising=False)

    def test_usage(self, capsys):
        assert run([]) == 1
        assert "python -m memkeep" in capsys.readouterr().out

    def test_list_and_search(self, tmp_path: Path, capsys):
        MemoryStore(tmp_path / "global").write("learning", "Redis", "cache notes")
        assert run(["list"]) == 0
        listed = json.loads(capsys.readouterr().out)
        assert listed["count"] == 1
        assert run(["search", "cache"]) == 0
        found = json.loads(capsys.readouterr().out)
        assert found["results"][0]["id"] == "learning-redis"

    def test_rebuild_and_sync(self, tmp_path: Path, capsys):
        MemoryStore(tmp_path / "global").write("learning", "Redis", "cache notes")
        assert run(["rebuild", "--force"]) == 0
        assert json.loads(capsys.readouterr().out)["entries_count"] == 1
        assert run(["sync", "--dry-run"]) == 0
        assert json.loads(capsys.readouterr().out)["dry_run"] is True

    def test_bad_scope(self, capsys):
        assert run(["list", "--scope", "enterprise"]) == 1
        assert "disabled" in capsys.readouterr().err

    def test_unknown_command(self):
        assert run(["frobnicate"]) == 1

    def test_health_and_suggest(self, tmp_path: Path, capsys):
        MemoryStore(tmp_path / "global").write("learning", "Redis", "cache notes")
        assert run(["health"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["health"] == "healthy"
        assert [issue["type"] for issue in report["issues"]] == ["orphaned_nodes"]
        assert run(["suggest", "--auto-link"]) == 0
        assert json.loads(capsys.readouterr().out)["count"] == 0
