"""Daemon process — long-running watch mode.

Usage: python -m repo_expert watch

Manages:
- Provider lifecycle (HTTP session)
- Watch daemon (git polling + filesystem events)
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from repo_expert.config import AppConfig, RepoConfig, load_config
from repo_expert.providers.letta import LettaProvider
from repo_expert.state import StateStore
from repo_expert.sync.reconcile import ReconcileResult, fix_reconcile_drift, reconcile_agent
from repo_expert.watch import WatchDaemon

logger = logging.getLogger(__name__)


class RepoExpertDaemon:
    """Wires configuration, provider and state store into a WatchDaemon."""

    def __init__(self, config: AppConfig | None = None, repo_names: list[str] | None = None) -> None:
        self.config = config or load_config()
        self.repos = self._select_repos(repo_names)
        self.store = StateStore(self.config.state_file)
        self._shutdown_event = asyncio.Event()

    def _select_repos(self, names: list[str] | None) -> dict[str, RepoConfig]:
        if not names:
            return dict(self.config.repos)
        unknown = [n for n in names if n not in self.config.repos]
        if unknown:
            raise ValueError(f"Unknown repo(s): {', '.join(unknown)}")
        return {n: self.config.repos[n] for n in names}

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"repo-expert watch already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Build components ─────────────────────────────────────

    def _build_provider(self) -> LettaProvider:
        name = self.config.provider.name
        if name == "letta":
            return LettaProvider(
                self.config.provider.base_url,
                self.config.provider.token,
                timeout=self.config.provider.timeout,
            )
        raise ValueError(f"Unknown provider: {name}")

    def _build_watch(self, provider: LettaProvider) -> WatchDaemon:
        return WatchDaemon(
            provider,
            self.repos,
            self.store,
            interval=self.config.watch.interval,
            debounce=self.config.watch.debounce,
            concurrency=self.config.watch.concurrency,
            full_reindex_threshold=self.config.watch.full_reindex_threshold,
        )

    # ── Entry points ─────────────────────────────────────────

    async def run(self) -> None:
        """Watch until SIGTERM/SIGINT."""
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        provider = self._build_provider()
        watch = self._build_watch(provider)
        logger.info("repo-expert watch starting (provider=%s)", provider.name)

        try:
            await watch.run(self._shutdown_event)
        finally:
            await provider.close()
            self._remove_pid()

    async def sync_once(self) -> None:
        """One poll-style pass over the selected repositories."""
        provider = self._build_provider()
        try:
            await self._build_watch(provider).sync_once()
        finally:
            await provider.close()

    async def reconcile(self, fix: bool = False) -> list[ReconcileResult]:
        """Compare local passage maps with the server; optionally repair drift."""
        provider = self._build_provider()
        results: list[ReconcileResult] = []
        try:
            state = self.store.load()
            for name in self.repos:
                agent = state.agents.get(name)
                if agent is None:
                    logger.warning("[%s] no agent in state, skipping", name)
                    continue
                result = await reconcile_agent(provider, agent)
                results.append(result)
                if fix and not result.in_sync:
                    cleaned = await fix_reconcile_drift(
                        provider, agent, result.plan, concurrency=self.config.watch.concurrency
                    )
                    if cleaned is not agent.passages:
                        self.store.update_agent(name, passages=cleaned)
        finally:
            await provider.close()
        return results
