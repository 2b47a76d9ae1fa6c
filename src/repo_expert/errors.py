"""Exception types shared across repo-expert."""

from __future__ import annotations

from pathlib import Path


class RepoExpertError(Exception):
    """Base class for all repo-expert errors."""


class ConfigError(RepoExpertError):
    """Configuration file is missing required fields or has wrong types."""


class ProviderError(RepoExpertError):
    """A call to the remote passage provider failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StateError(RepoExpertError):
    """Persisted state could not be used. The original file is never modified.

    ``backup_path`` is the copy made before raising, or None when the file
    could not be copied (it is then left in place untouched).
    """

    def __init__(self, message: str, backup_path: Path | None) -> None:
        if backup_path is None:
            super().__init__(f"{message} (original left in place, backup failed)")
        else:
            super().__init__(f"{message} (original preserved at {backup_path})")
        self.backup_path = backup_path


class StateCorruptError(StateError):
    """State file could not be read or decoded as UTF-8 JSON."""


class StateSchemaError(StateError):
    """State file parsed but does not match the expected shape."""


class UnsupportedStateVersionError(StateError):
    """State file was written by a newer or unknown schema version."""

    def __init__(self, version: object, backup_path: Path | None) -> None:
        super().__init__(f"Unsupported state version: {version!r}", backup_path)
        self.version = version


class AgentNotFoundError(RepoExpertError, KeyError):
    """No agent state exists for the requested repository."""

    def __init__(self, repo_name: str) -> None:
        super().__init__(f"No agent found for repo: {repo_name}")
        self.repo_name = repo_name

    def __str__(self) -> str:
        return self.args[0]
