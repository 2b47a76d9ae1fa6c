"""Collect indexable files from a repository checkout.

All paths handed out here live in the repository's *logical* path space:
relative to ``RepoConfig.path`` joined with ``base_path``, forward-slash
separated. Git diffs and filesystem events are translated into the same space
with :func:`to_logical_path` before they reach the sync executor.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from repo_expert.config import RepoConfig
    from repo_expert.submodule import SubmoduleInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    """A file's logical path and content, ready for chunking."""

    path: str
    content: str
    size_kb: float


# ── Path helpers ─────────────────────────────────────────────


def normalize_path(path: str) -> str:
    """Forward slashes, no leading ``./``."""
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def effective_root(config: RepoConfig) -> Path:
    root = Path(config.path)
    return root / config.base_path if config.base_path else root


def to_logical_path(config: RepoConfig, repo_relative: str) -> str | None:
    """Translate a repository-relative path into the collector's path space.

    Returns None for paths outside ``base_path``.
    """
    path = normalize_path(repo_relative)
    if not config.base_path:
        return path
    prefix = config.base_path.rstrip("/") + "/"
    if not path.startswith(prefix):
        return None
    return path[len(prefix):] or None


# ── Inclusion rules ──────────────────────────────────────────


def matches_filters(path: str, config: RepoConfig) -> bool:
    """Extension and ignore-dir rules, without the size check.

    Used for git diffs and filesystem events, where the size is re-checked
    later when the file is actually read.
    """
    path = normalize_path(path)
    if not any(path.endswith(ext) for ext in config.extensions):
        return False
    for segment in path.split("/"):
        if segment in config.ignore_dirs or segment.startswith("."):
            return False
    return True


def should_include_file(path: str, size_kb: float, config: RepoConfig) -> bool:
    return size_kb <= config.max_file_size_kb and matches_filters(path, config)



# ── Collection ───────────────────────────────────────────────


def _read(abs_path: Path, logical_path: str, max_kb: float) -> FileInfo | None:
    """None when missing, not a file, or too large. Other OSErrors propagate."""
    try:
        if not abs_path.is_file():
            return None
        size_kb = abs_path.stat().st_size / 1024
        if size_kb > max_kb:
            logger.debug("Skipping %s (%.1f KB > %.1f KB)", logical_path, size_kb, max_kb)
            return None
        content = abs_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    return FileInfo(path=logical_path, content=content, size_kb=size_kb)


def _walk(config: RepoConfig) -> Iterator[tuple[Path, str]]:
    """(absolute path, logical path) of every file passing extension/ignore rules."""
    root = effective_root(config)
    if not root.is_dir():
        logger.warning("Repository root does not exist: %s", root)
        return

    for dirpath, dirnames, filenames in os.walk(root):
        # Prune in place so os.walk never descends into ignored directories
        dirnames[:] = sorted(
            d for d in dirnames if d not in config.ignore_dirs and not d.startswith(".")
        )
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        for name in sorted(filenames):
            rel_path = name if rel_dir == "." else f"{rel_dir}/{name}"
            if matches_filters(rel_path, config):
                yield Path(dirpath) / name, rel_path


def list_files(config: RepoConfig) -> list[str]:
    """Logical paths of every indexable file, without reading contents.

    Files that cannot be stat'ed are skipped with a warning.
    """
    paths: list[str] = []
    for abs_path, rel_path in _walk(config):
        try:
            if not abs_path.is_file():
                continue
            size_kb = abs_path.stat().st_size / 1024
        except OSError as e:
            logger.warning("Skipping unreadable file %s: %s", rel_path, e)
            continue
        if size_kb <= config.max_file_size_kb:
            paths.append(rel_path)
    return paths


def collect_files(config: RepoConfig) -> list[FileInfo]:
    """Walk the effective root and return every file passing the inclusion rules.

    A file that cannot be read is skipped with a warning; the rest of the
    walk continues.
    """
    files: list[FileInfo] = []
    for abs_path, rel_path in _walk(config):
        try:
            info = _read(abs_path, rel_path, config.max_file_size_kb)
        except OSError as e:
            logger.warning("Skipping unreadable file %s: %s", rel_path, e)
            continue
        if info is not None:
            files.append(info)
    return files


def collect_file(config: RepoConfig, path: str) -> FileInfo | None:
    """Read a single logical path. None when missing, not a file, or too large.

    Any other OSError propagates so the caller can keep the file's passages.
    """
    logical = normalize_path(path)
    return _read(effective_root(config) / logical, logical, config.max_file_size_kb)


def _submodule_config(config: RepoConfig, submodule: SubmoduleInfo) -> RepoConfig:
    return replace(
        config,
        path=str(Path(config.path) / submodule.path),
        base_path=None,
        include_submodules=False,
    )


def collect_submodule_files(config: RepoConfig, submodule: SubmoduleInfo) -> list[FileInfo]:
    """Collect files from an initialized submodule checkout.

    Returned paths are prefixed with the submodule's repository-relative path.
    Nested submodules are not expanded.
    """
    if not submodule.initialized:
        return []
    return [
        replace(info, path=f"{submodule.path}/{info.path}")
        for info in collect_files(_submodule_config(config, submodule))
    ]


def list_submodule_files(config: RepoConfig, submodule: SubmoduleInfo) -> list[str]:
    """Path-only variant of :func:`collect_submodule_files`."""
    if not submodule.initialized:
        return []
    return [
        f"{submodule.path}/{path}"
        for path in list_files(_submodule_config(config, submodule))
    ]
