"""Git port: the handful of git queries the watch daemon needs.

Every query degrades to an empty/None result instead of raising, so a repo
that is not a git checkout (or a machine without git) only skips a tick.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class GitPort(Protocol):
    async def submodule_status(self, repo_path: str) -> str:
        """Raw ``git submodule status`` output, "" on failure."""
        ...

    async def version(self) -> str | None: ...

    async def head_commit(self, repo_path: str) -> str | None:
        """Current HEAD sha, None on failure."""
        ...

    async def diff_files(self, repo_path: str, since: str) -> list[str] | None:
        """Paths changed between ``since`` and HEAD, None on failure."""
        ...


class SubprocessGit:
    """GitPort backed by the ``git`` executable."""

    def __init__(self, timeout: int = 10) -> None:
        self.timeout = timeout

    async def _run(self, args: list[str], cwd: str | None = None) -> str | None:
        cmd = ["git", *args]
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                cwd=cwd,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.warning("git not runnable (cwd=%s)", cwd)
            return None
        except subprocess.TimeoutExpired:
            logger.warning("git %s timed out after %ds (cwd=%s)", args[0], self.timeout, cwd)
            return None
        except NotADirectoryError:
            return None

        if result.returncode != 0:
            logger.debug(
                "git %s failed (rc=%d, cwd=%s): %s",
                " ".join(args),
                result.returncode,
                cwd,
                result.stderr.strip(),
            )
            return None
        return result.stdout

    async def submodule_status(self, repo_path: str) -> str:
        return await self._run(["submodule", "status"], cwd=repo_path) or ""

    async def version(self) -> str | None:
        out = await self._run(["--version"])
        return out.strip() if out is not None else None

    async def head_commit(self, repo_path: str) -> str | None:
        out = await self._run(["rev-parse", "HEAD"], cwd=repo_path)
        if out is None:
            return None
        return out.strip() or None

    async def diff_files(self, repo_path: str, since: str) -> list[str] | None:
        out = await self._run(["diff", "--name-only", f"{since}..HEAD"], cwd=repo_path)
        if out is None:
            return None
        return [line for line in out.splitlines() if line.strip()]
