"""Classify the work of a sync run before touching the remote store."""

from __future__ import annotations

from dataclasses import dataclass

PassageMap = dict[str, list[str]]

DEFAULT_FULL_REINDEX_THRESHOLD = 500


@dataclass(frozen=True)
class SyncPlan:
    passages_to_delete: list[str]
    files_to_reindex: list[str]
    is_full_reindex: bool


def compute_sync_plan(
    passages: PassageMap,
    changed_files: list[str],
    full_reindex_threshold: int = DEFAULT_FULL_REINDEX_THRESHOLD,
) -> SyncPlan:
    """Which passages become stale and which files must be re-indexed.

    ``changed_files`` is expected to be deduplicated already. A change set of
    exactly ``full_reindex_threshold`` files is still incremental.
    """
    changed = set(changed_files)
    passages_to_delete: list[str] = []
    for path, ids in passages.items():
        if path in changed:
            passages_to_delete.extend(ids)

    return SyncPlan(
        passages_to_delete=passages_to_delete,
        files_to_reindex=list(changed_files),
        is_full_reindex=len(changed_files) > full_reindex_threshold,
    )
