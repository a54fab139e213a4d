"""Entry point: python -m memkeep <command> [--scope NAME]

- list [type]           Memories in the scope, newest first
- search <query>        Keyword search over titles, tags and bodies
- scopes                Memories from every accessible scope
- rebuild [--force]     Re-derive index.json from the markdown files
- sync [--dry-run]      Reconcile index, graph and embeddings with the files
- duplicates            Likely duplicate pairs among cached embeddings
- suggest [--auto-link] Unlinked pairs with similar embeddings
- health                Consistency score for files, index and graph
"""

from __future__ import annotations

import json
import sys

from memkeep.config import configure_logging, load_config
from memkeep.errors import MemkeepError
from memkeep.tools.memory_tools import build_memory_tools

USAGE = __doc__


def _pop_option(args: list[str], name: str) -> str | None:
    if name not in args:
        return None
    i = args.index(name)
    if i + 1 >= len(args):
        raise SystemExit(f"{name} needs a value")
    value = args[i + 1]
    del args[i : i + 2]
    return value


def _pop_flag(args: list[str], name: str) -> bool:
    if name in args:
        args.remove(name)
        return True
    return False


def run(argv: list[str]) -> int:
    args = list(argv)
    if not args or args[0] in ("-h", "--help"):
        print(USAGE)
        return 0 if args else 1

    config = load_config()
    configure_logging(config.log_level)

    cmd, rest = args[0], args[1:]
    scope = _pop_option(rest, "--scope")
    try:
        tools = build_memory_tools(config, scope=scope)
    except MemkeepError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if cmd == "list":
        result = tools["list_memories"](type=rest[0] if rest else None)
    elif cmd == "search":
        if not rest:
            print("Usage: python -m memkeep search <query>", file=sys.stderr)
            return 1
        result = tools["search_memories"](" ".join(rest))
    elif cmd == "scopes":
        result = tools["list_all_scopes"]()
    elif cmd == "rebuild":
        result = tools["rebuild_index"](force=_pop_flag(rest, "--force"))
    elif cmd == "sync":
        result = tools["sync_memories"](dry_run=_pop_flag(rest, "--dry-run"))
    elif cmd == "duplicates":
        result = tools["find_duplicates"]()
    elif cmd == "suggest":
        result = tools["suggest_links"](auto_link=_pop_flag(rest, "--auto-link"))
    elif cmd == "health":
        result = tools["check_health"]()
    else:
        print(USAGE)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0 if result.get("status") == "success" else 1


def main() -> None:
    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
