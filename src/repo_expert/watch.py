"""Watch daemon — keep every configured repository's passages in sync.

Two triggers feed each repository:

- a poll loop that compares git HEAD with the agent's ``lastSyncCommit`` and
  syncs the diff (or everything, when the agent was never synced), and
- filesystem events, debounced and flushed as an explicit file list. This
  path ignores git, so uncommitted edits are picked up too, and it never
  moves the sync cursor.

Per repository at most one sync runs at a time. Triggers that arrive while a
sync is running are merged into the pending set and flushed right after it.
Repositories are independent of each other.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from repo_expert.collector import (
    collect_file,
    list_files,
    matches_filters,
    normalize_path,
    to_logical_path,
)
from repo_expert.errors import StateError
from repo_expert.git import GitPort, SubprocessGit
from repo_expert.state import now_iso
from repo_expert.submodule import expand_submodule_files, list_submodules, partition_diff_paths
from repo_expert.sync.executor import DEFAULT_CONCURRENCY, SyncResult, sync_repo
from repo_expert.sync.plan import DEFAULT_FULL_REINDEX_THRESHOLD

if TYPE_CHECKING:
    from repo_expert.config import RepoConfig
    from repo_expert.providers.base import PassageProvider
    from repo_expert.state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0
DEFAULT_DEBOUNCE = 2.0
MAX_BACKOFF = 300.0

SyncFn = Callable[..., Awaitable[SyncResult]]


# ── Pure helpers ─────────────────────────────────────────────


def compute_backoff_delay(
    consecutive_failures: int, base_interval_s: float, max_delay: float = MAX_BACKOFF
) -> float:
    """0 with no failures, then base, 2×base, 4×base, … capped at ``max_delay``.

    The default cap is in seconds. Any other unit works when ``max_delay`` is
    given in the same unit as ``base_interval_s``.
    """
    if consecutive_failures <= 0:
        return 0
    # Cap the exponent; the delay is clamped anyway
    exponent = min(consecutive_failures - 1, 32)
    return min(base_interval_s * 2**exponent, max_delay)


def should_sync(last_sync_commit: str | None, current_head: str) -> bool:
    return last_sync_commit != current_head


def format_sync_log(
    repo_name: str,
    from_commit: str | None,
    to_commit: str | None,
    files_changed: int,
    duration: float,
    event: bool = False,
) -> str:
    secs = f"{duration:.1f}s"
    if event:
        return f"[{repo_name}] synced {files_changed} files ({secs}) [event]"
    start = from_commit[:7] if from_commit else "initial"
    end = to_commit[:7] if to_commit else "?"
    return f"[{repo_name}] synced {start}..{end} ({files_changed} files, {secs})"


def _dedupe(paths: list[str]) -> list[str]:
    return list(dict.fromkeys(paths))


# ── Filesystem watching ──────────────────────────────────────


class WatcherHandle(Protocol):
    def stop(self) -> None: ...


# (root, on_path) → handle. ``on_path`` may be called from any thread.
WatcherFactory = Callable[[str, Callable[[str], None]], WatcherHandle]


class _ObserverHandle:
    def __init__(self, observer) -> None:
        self._observer = observer

    def stop(self) -> None:
        self._observer.stop()
        self._observer.join(timeout=5.0)


def watchdog_watcher(root: str, on_path: Callable[[str], None]) -> WatcherHandle:
    """Recursive watchdog observer reporting every touched file path under ``root``."""
    from watchdog.events import FileSystemEventHandler
    from watchdog.observers import Observer

    class _Handler(FileSystemEventHandler):
        def on_any_event(self, event) -> None:
            if event.is_directory or event.event_type in ("opened", "closed_no_write"):
                return
            on_path(os.fsdecode(event.src_path))
            dest = getattr(event, "dest_path", "")
            if dest:
                on_path(os.fsdecode(dest))

    observer = Observer()
    observer.daemon = True
    observer.schedule(_Handler(), root, recursive=True)
    observer.start()
    return _ObserverHandle(observer)


# ── Per-repository context ───────────────────────────────────


@dataclass
class RepoContext:
    """Mutable scheduling state of one repository, owned by the daemon."""

    name: str
    config: RepoConfig
    pending: set[str] = field(default_factory=set)
    debounce: asyncio.TimerHandle | None = None
    sync_task: asyncio.Task | None = None
    watcher: WatcherHandle | None = None
    consecutive_failures: int = 0
    backoff_until: float = 0.0

    @property
    def syncing(self) -> bool:
        return self.sync_task is not None and not self.sync_task.done()


class WatchDaemon:
    """Poll + filesystem-event driven sync for a set of repositories."""

    def __init__(
        self,
        provider: PassageProvider,
        repos: dict[str, RepoConfig],
        store: StateStore,
        *,
        interval: float = DEFAULT_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        git: GitPort | None = None,
        watcher_factory: WatcherFactory | None = watchdog_watcher,
        sync_fn: SyncFn = sync_repo,
        concurrency: int = DEFAULT_CONCURRENCY,
        full_reindex_threshold: int = DEFAULT_FULL_REINDEX_THRESHOLD,
    ) -> None:
        self.provider = provider
        self.store = store
        self.interval = interval
        self.debounce = debounce
        self.git = git or SubprocessGit()
        self.watcher_factory = watcher_factory
        self.sync_fn = sync_fn
        self.concurrency = concurrency
        self.full_reindex_threshold = full_reindex_threshold
        self.contexts = {name: RepoContext(name=name, config=cfg) for name, cfg in repos.items()}
        self._state_file = Path(os.path.abspath(store.path))
        self._shutdown: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._fatal: BaseException | None = None

    @property
    def stopping(self) -> bool:
        return self._shutdown is not None and self._shutdown.is_set()

    # ── Main loop ────────────────────────────────────────────

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run until ``shutdown_event`` is set, then wind down gracefully.

        Raises the StateError that stopped the daemon, if any.
        """
        self._loop = asyncio.get_running_loop()
        self._shutdown = shutdown_event
        logger.info(
            "Watching %d repo(s) (interval=%.0fs, debounce=%.1fs)",
            len(self.contexts),
            self.interval,
            self.debounce,
        )

        for ctx in self.contexts.values():
            self._start_watcher(ctx)
        poll_tasks = [
            asyncio.create_task(self._poll_loop(ctx), name=f"poll-{ctx.name}")
            for ctx in self.contexts.values()
        ]

        try:
            await shutdown_event.wait()
        finally:
            await self._wind_down(poll_tasks)
            logger.info("Watch daemon stopped.")

        if self._fatal is not None:
            raise self._fatal

    async def sync_once(self) -> None:
        """A single poll pass over every repository, without watching."""
        self._loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        await asyncio.gather(*(self.poll(ctx) for ctx in self.contexts.values()))
        if self._fatal is not None:
            raise self._fatal

    async def _wind_down(self, poll_tasks: list[asyncio.Task]) -> None:
        # Pending, not-yet-debounced events are dropped: stop means stop
        for ctx in self.contexts.values():
            if ctx.debounce is not None:
                ctx.debounce.cancel()
                ctx.debounce = None
            ctx.pending.clear()
            if ctx.watcher is not None:
                await asyncio.to_thread(ctx.watcher.stop)
                ctx.watcher = None

        await asyncio.gather(*poll_tasks, return_exceptions=True)
        in_flight = [ctx.sync_task for ctx in self.contexts.values() if ctx.sync_task]
        if in_flight:
            logger.info("Waiting for %d in-flight sync(s) to finish", len(in_flight))
            await asyncio.gather(*in_flight, return_exceptions=True)

    def _stop_fatally(self, error: BaseException) -> None:
        logger.critical("Stopping watch daemon: %s", error)
        if self._fatal is None:
            self._fatal = error
        if self._shutdown is not None:
            self._shutdown.set()

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Sleep ``delay`` seconds. True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    # ── Poll trigger ─────────────────────────────────────────

    async def _poll_loop(self, ctx: RepoContext) -> None:
        while not self.stopping:
            try:
                await self.poll(ctx)
            except StateError as e:
                self._stop_fatally(e)
                return
            except Exception:
                logger.exception("[%s] poll failed", ctx.name)
            if await self._sleep_or_stop(self.interval):
                return

    async def poll(self, ctx: RepoContext) -> None:
        """One poll tick: sync whatever git says changed since the last cursor."""
        if self._loop.time() < ctx.backoff_until:
            logger.debug("[%s] in backoff, skipping poll", ctx.name)
            return

        agent = self.store.load().agents.get(ctx.name)
        if agent is None:
            logger.debug("[%s] no agent in state, skipping", ctx.name)
            return

        head = await self.git.head_commit(ctx.config.path)
        if head is None:
            logger.debug("[%s] could not read HEAD, skipping", ctx.name)
            return

        if not should_sync(agent.last_sync_commit, head):
            logger.info("[%s] no changes (HEAD=%s)", ctx.name, head[:7])
            return

        start = self._loop.time()
        changed = await self._changed_since(ctx, agent.last_sync_commit)
        if changed is None or self.stopping:
            return

        if ctx.syncing:
            # Picked up by the flush that follows the running sync
            ctx.pending.update(changed)
            return

        if not changed:
            # HEAD moved without touching indexed files (merge, docs-only commit)
            self.store.update_agent(ctx.name, last_sync_commit=head, last_sync_at=now_iso())
            logger.info(
                format_sync_log(ctx.name, agent.last_sync_commit, head, 0, self._loop.time() - start)
            )
            return

        task = self._start_sync(ctx, changed, head, event=False)
        if task is not None:
            await task

    async def _changed_since(self, ctx: RepoContext, since: str | None) -> list[str] | None:
        """Logical paths to sync. None when git could not produce a diff."""
        cfg = ctx.config

        if since is None:
            paths = await asyncio.to_thread(list_files, cfg)
            if cfg.include_submodules:
                for sub in await list_submodules(cfg.path, self.git):
                    paths.extend(self._included(cfg, await expand_submodule_files(cfg, sub)))
            return _dedupe(paths)

        diff = await self.git.diff_files(cfg.path, since)
        if diff is None:
            logger.error("[%s] git diff failed (%s..HEAD), skipping", ctx.name, since[:7])
            return None

        diff = [normalize_path(p) for p in diff]
        submodules = await list_submodules(cfg.path, self.git) if cfg.include_submodules else []
        changed_subs, regular = partition_diff_paths(
            diff, submodules, lambda p: bool(self._included(cfg, [p]))
        )
        paths = self._included(cfg, regular)
        for sub in changed_subs:
            paths.extend(self._included(cfg, await expand_submodule_files(cfg, sub)))
        return _dedupe(paths)

    @staticmethod
    def _included(cfg: RepoConfig, repo_paths: list[str]) -> list[str]:
        """Translate repository-relative paths to logical ones, keeping only indexable files."""
        result = []
        for p in repo_paths:
            logical = to_logical_path(cfg, p)
            if logical is not None and matches_filters(logical, cfg):
                result.append(logical)
        return result

    # ── Filesystem trigger ───────────────────────────────────

    def _start_watcher(self, ctx: RepoContext) -> None:
        if self.watcher_factory is None:
            return
        loop = self._loop

        def on_path(raw: str) -> None:
            loop.call_soon_threadsafe(self.notify_change, ctx.name, raw)

        try:
            ctx.watcher = self.watcher_factory(ctx.config.path, on_path)
        except Exception as e:
            logger.warning(
                "[%s] file watch error, continuing with polling only: %s", ctx.name, e
            )

    def notify_change(self, repo_name: str, raw_path: str) -> None:
        """Queue a changed path (absolute, or relative to the repo root). Loop thread only."""
        ctx = self.contexts.get(repo_name)
        if ctx is None or self.stopping:
            return
        logical = self._event_to_logical(ctx, raw_path)
        if logical is None:
            return
        ctx.pending.add(logical)
        self._arm_flush(ctx, self.debounce)

    def _event_to_logical(self, ctx: RepoContext, raw_path: str) -> str | None:
        if not raw_path:
            return None
        root = Path(ctx.config.path)
        path = Path(raw_path)
        abs_path = path if path.is_absolute() else root / normalize_path(raw_path)
        abs_path = Path(os.path.normpath(abs_path))

        # The state file, its temp files and backups live next to each other
        if abs_path.parent == self._state_file.parent and abs_path.name.startswith(
            self._state_file.name
        ):
            return None

        try:
            rel = abs_path.relative_to(root).as_posix()
        except ValueError:
            return None
        logical = to_logical_path(ctx.config, rel)
        if logical is None or not matches_filters(logical, ctx.config):
            return None
        return logical

    def _arm_flush(self, ctx: RepoContext, delay: float) -> None:
        if ctx.debounce is not None:
            ctx.debounce.cancel()
        remaining_backoff = ctx.backoff_until - self._loop.time()
        ctx.debounce = self._loop.call_later(max(delay, remaining_backoff, 0), self._flush, ctx)

    def _flush(self, ctx: RepoContext) -> None:
        ctx.debounce = None
        if self.stopping or ctx.syncing or not ctx.pending:
            # A running sync re-arms the flush when it completes
            return
        files = sorted(ctx.pending)
        ctx.pending.clear()
        self._start_sync(ctx, files, None, event=True)

    # ── Sync execution ───────────────────────────────────────

    def _start_sync(
        self, ctx: RepoContext, files: list[str], head_commit: str | None, *, event: bool
    ) -> asyncio.Task | None:
        if self.stopping:
            return None
        ctx.sync_task = asyncio.create_task(
            self._sync(ctx, files, head_commit, event=event), name=f"sync-{ctx.name}"
        )
        return ctx.sync_task

    async def _sync(
        self, ctx: RepoContext, files: list[str], head_commit: str | None, *, event: bool
    ) -> None:
        try:
            await self._sync_once(ctx, files, head_commit, event=event)
        except StateError as e:
            self._stop_fatally(e)
        except Exception as e:
            logger.exception("[%s] sync task failed: %s", ctx.name, e)
        finally:
            ctx.sync_task = None
            if ctx.pending and not self.stopping:
                self._arm_flush(ctx, 0)

    async def _sync_once(
        self, ctx: RepoContext, files: list[str], head_commit: str | None, *, event: bool
    ) -> None:
        start = self._loop.time()
        agent = self.store.load().agents.get(ctx.name)
        if agent is None:
            logger.debug("[%s] no agent in state, dropping %d file(s)", ctx.name, len(files))
            return

        try:
            result = await self.sync_fn(
                self.provider,
                agent,
                files,
                partial(collect_file, ctx.config),
                head_commit,
                concurrency=self.concurrency,
                full_reindex_threshold=self.full_reindex_threshold,
            )
        except Exception as e:
            self._record_failure(ctx)
            logger.error(
                "[%s] sync error: %s (attempt %d, backoff %ds)",
                ctx.name,
                e,
                ctx.consecutive_failures,
                round(ctx.backoff_until - self._loop.time()),
            )
            if event:
                ctx.pending.update(files)
            return

        updates: dict = {"passages": result.passages, "last_sync_at": now_iso()}
        if result.last_sync_commit is not None:
            updates["last_sync_commit"] = result.last_sync_commit
        self.store.update_agent(ctx.name, **updates)

        logger.info(
            format_sync_log(
                ctx.name,
                agent.last_sync_commit,
                result.last_sync_commit,
                len(files),
                self._loop.time() - start,
                event=event,
            )
        )

        if result.failed_files:
            self._record_failure(ctx)
            ctx.pending.update(result.failed_files)
            logger.warning(
                "[%s] %d file(s) failed, retrying in %ds: %s",
                ctx.name,
                len(result.failed_files),
                round(ctx.backoff_until - self._loop.time()),
                ", ".join(result.failed_files[:5]),
            )
        else:
            ctx.consecutive_failures = 0
            ctx.backoff_until = 0.0

    def _record_failure(self, ctx: RepoContext) -> None:
        ctx.consecutive_failures += 1
        delay = compute_backoff_delay(ctx.consecutive_failures, self.interval)
        ctx.backoff_until = self._loop.time() + delay
