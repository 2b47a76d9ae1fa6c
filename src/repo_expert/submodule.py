"""Git submodule discovery and diff partitioning."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from repo_expert.collector import list_submodule_files

if TYPE_CHECKING:
    from repo_expert.config import RepoConfig
    from repo_expert.git import GitPort


@dataclass(frozen=True)
class SubmoduleInfo:
    path: str
    commit: str
    initialized: bool


def parse_submodule_status(output: str) -> list[SubmoduleInfo]:
    """Parse ``git submodule status`` output.

    Each line is ``<status><hash> <path> [(<describe>)]`` where status is
    ' ' (in sync), '+' (different commit), '-' (not initialized) or 'U' (conflict).
    """
    submodules: list[SubmoduleInfo] = []
    for line in output.splitlines():
        if not line:
            continue
        status = line[0]
        parts = line[1:].split()
        if len(parts) < 2:
            continue
        submodules.append(
            SubmoduleInfo(path=parts[1], commit=parts[0], initialized=status != "-")
        )
    return submodules


def find_submodule(path: str, submodules: list[SubmoduleInfo]) -> SubmoduleInfo | None:
    """Return the submodule whose pointer path equals ``path``, if any."""
    for sub in submodules:
        if sub.path == path:
            return sub
    return None


def partition_diff_paths(
    diff_paths: list[str],
    submodules: list[SubmoduleInfo],
    filter_fn: Callable[[str], bool],
) -> tuple[list[SubmoduleInfo], list[str]]:
    """Split diff paths into (changed submodules, regular files passing ``filter_fn``).

    Submodules are reported once each, in first-seen order.
    """
    seen: set[str] = set()
    changed: list[SubmoduleInfo] = []
    regular: list[str] = []
    for p in diff_paths:
        sub = find_submodule(p, submodules)
        if sub is not None:
            if sub.path not in seen:
                seen.add(sub.path)
                changed.append(sub)
        elif filter_fn(p):
            regular.append(p)
    return changed, regular


async def list_submodules(repo_path: str, git: GitPort) -> list[SubmoduleInfo]:
    """All submodules of the repository, or [] when git is unavailable."""
    return parse_submodule_status(await git.submodule_status(repo_path))


async def expand_submodule_files(config: RepoConfig, submodule: SubmoduleInfo) -> list[str]:
    """Repository-relative paths of every indexable file inside ``submodule``."""
    return await asyncio.to_thread(list_submodule_files, config, submodule)
