"""Entry point: python -m repo_expert <command>

- "watch [repo...]":        Daemon mode (git polling + filesystem events)
- "sync [repo...]":         One incremental sync pass, then exit
- "reconcile [--fix] [repo...]": Compare local passage maps against the server
"""

from __future__ import annotations

import asyncio
import logging
import sys

from repo_expert.config import load_config
from repo_expert.errors import RepoExpertError


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_daemon(repo_names: list[str]):
    config = load_config()
    _setup_logging(config.log_level)

    from repo_expert.daemon import RepoExpertDaemon

    return RepoExpertDaemon(config, repo_names)


def _run_watch(args: list[str]) -> None:
    daemon = _build_daemon(args)
    asyncio.run(daemon.run())


def _run_sync(args: list[str]) -> None:
    daemon = _build_daemon(args)
    asyncio.run(daemon.sync_once())


def _run_reconcile(args: list[str]) -> None:
    fix = "--fix" in args
    daemon = _build_daemon([a for a in args if a != "--fix"])
    results = asyncio.run(daemon.reconcile(fix=fix))

    for r in results:
        status = "in sync" if r.in_sync else "DRIFT"
        print(
            f"{r.repo_name}: {status} (local={r.local_passage_count}, "
            f"server={r.server_passage_count}, orphans={len(r.plan.orphan_passage_ids)}, "
            f"missing={len(r.plan.missing_passage_ids)})"
        )
    if any(not r.in_sync for r in results) and not fix:
        print("Run with --fix to delete orphans and drop missing passage ids.")


def _usage() -> None:
    print("Usage: python -m repo_expert [watch|sync|reconcile] [--fix] [repo...]")
    print("  watch      — Watch repos and keep passages in sync (daemon)")
    print("  sync       — Sync changes since the last synced commit once")
    print("  reconcile  — Report drift between local state and the server")


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    args = sys.argv[2:]
    commands = {"watch": _run_watch, "sync": _run_sync, "reconcile": _run_reconcile}

    if cmd not in commands:
        _usage()
        sys.exit(1)

    try:
        commands[cmd](args)
    except KeyboardInterrupt:
        pass
    except (RepoExpertError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
