"""Sync executor: upload new chunks, swap bookkeeping, then clean up.

Ordering contract: a file's new passages are fully uploaded before its old
passages are deleted, and all deletions happen after every file has been
processed. An interrupted run can therefore leave duplicates (which
reconciliation removes) but never a file with no searchable content.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeVar

from repo_expert.chunker import Chunk, chunk_file
from repo_expert.sync.plan import DEFAULT_FULL_REINDEX_THRESHOLD, PassageMap, compute_sync_plan

if TYPE_CHECKING:
    from repo_expert.collector import FileInfo
    from repo_expert.providers.base import PassageProvider
    from repo_expert.state.models import AgentState

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 20

CollectFile = Callable[[str], "FileInfo | None"]
Chunker = Callable[[str, str], list[Chunk]]


class SyncReporter(Protocol):
    """Receives progress while a sync runs."""

    def on_progress(self, done: int, total: int) -> None: ...

    def on_file_error(self, path: str, error: BaseException) -> None: ...


class NullReporter:
    def on_progress(self, done: int, total: int) -> None:
        pass

    def on_file_error(self, path: str, error: BaseException) -> None:
        pass


@dataclass
class SyncResult:
    passages: PassageMap
    last_sync_commit: str | None
    files_removed: int = 0
    files_reindexed: int = 0
    is_full_reindex: bool = False
    failed_files: list[str] = field(default_factory=list)


@dataclass
class _FileOutcome:
    """Result of processing one file, applied to the map afterwards."""

    path: str
    new_ids: list[str] | None = None  # None → file is gone
    error: BaseException | None = None
    leaked_ids: list[str] = field(default_factory=list)


class BoundedPool:
    """Caps the number of in-flight remote calls across a whole sync run."""

    def __init__(self, width: int) -> None:
        self._sem = asyncio.Semaphore(width)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._sem:
            return await fn()


async def delete_passages(
    provider: PassageProvider, agent_id: str, passage_ids: list[str], pool: BoundedPool
) -> int:
    """Delete passages through ``pool``; failures are ignored. Returns the failure count."""

    async def _delete(pid: str) -> None:
        await pool.run(lambda: provider.delete_passage(agent_id, pid))

    results = await asyncio.gather(*(_delete(pid) for pid in passage_ids), return_exceptions=True)
    failures = [r for r in results if isinstance(r, BaseException)]
    for err in failures:
        if isinstance(err, asyncio.CancelledError):
            raise err
        logger.debug("Passage delete failed (ignored): %s", err)
    return len(failures)


async def _upload_file(
    provider: PassageProvider,
    agent_id: str,
    path: str,
    collect_file: CollectFile,
    chunker: Chunker,
    pool: BoundedPool,
) -> _FileOutcome:
    try:
        info = await asyncio.to_thread(collect_file, path)
        if info is None:
            return _FileOutcome(path=path, new_ids=None)
        chunks = chunker(info.path, info.content)
    except Exception as e:
        return _FileOutcome(path=path, error=e)

    async def _store(chunk: Chunk) -> str:
        return await pool.run(lambda: provider.store_passage(agent_id, chunk.text))

    results = await asyncio.gather(*(_store(c) for c in chunks), return_exceptions=True)
    uploaded = [r for r in results if isinstance(r, str)]
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        # Partial uploads are queued for deletion with the stale passages
        return _FileOutcome(path=path, error=errors[0], leaked_ids=uploaded)
    return _FileOutcome(path=path, new_ids=uploaded)


async def sync_repo(
    provider: PassageProvider,
    agent: AgentState,
    changed_files: list[str],
    collect_file: CollectFile,
    head_commit: str | None,
    *,
    chunker: Chunker = chunk_file,
    concurrency: int = DEFAULT_CONCURRENCY,
    full_reindex_threshold: int = DEFAULT_FULL_REINDEX_THRESHOLD,
    reporter: SyncReporter | None = None,
) -> SyncResult:
    """Bring the remote passages of ``changed_files`` up to date.

    Files are isolated from each other: a file whose collection, chunking or
    upload fails keeps its previous passages and is listed in
    ``failed_files``. A file that no longer exists (or grew past the size
    limit) loses its passages.

    ``head_commit`` is passed through to the result untouched; None means the
    caller does not want the sync cursor moved.
    """
    reporter = reporter or NullReporter()
    plan = compute_sync_plan(agent.passages, changed_files, full_reindex_threshold)
    if plan.is_full_reindex:
        logger.info(
            "Full re-index for %s (%d files > threshold %d)",
            agent.repo_name,
            len(plan.files_to_reindex),
            full_reindex_threshold,
        )

    pool = BoundedPool(concurrency)
    total = len(plan.files_to_reindex)
    done = 0

    async def _process(path: str) -> _FileOutcome:
        nonlocal done
        outcome = await _upload_file(provider, agent.agent_id, path, collect_file, chunker, pool)
        done += 1
        reporter.on_progress(done, total)
        return outcome

    outcomes = await asyncio.gather(*(_process(p) for p in plan.files_to_reindex))

    passages: PassageMap = dict(agent.passages)
    to_delete: list[str] = []
    result = SyncResult(
        passages=passages,
        last_sync_commit=head_commit,
        is_full_reindex=plan.is_full_reindex,
    )

    for outcome in outcomes:
        old_ids = passages.get(outcome.path, [])
        if outcome.error is not None:
            logger.warning("Failed to sync %s: %s", outcome.path, outcome.error)
            reporter.on_file_error(outcome.path, outcome.error)
            result.failed_files.append(outcome.path)
            to_delete.extend(outcome.leaked_ids)
        elif outcome.new_ids is None:
            to_delete.extend(old_ids)
            passages.pop(outcome.path, None)
            result.files_removed += 1
        else:
            to_delete.extend(old_ids)
            if outcome.new_ids:
                passages[outcome.path] = outcome.new_ids
            else:
                # Whitespace-only file: nothing to index
                passages.pop(outcome.path, None)
            result.files_reindexed += 1

    if to_delete:
        failed = await delete_passages(provider, agent.agent_id, to_delete, pool)
        logger.debug(
            "Cleaned up %d stale passages for %s (%d failures ignored)",
            len(to_delete) - failed,
            agent.repo_name,
            failed,
        )

    return result
