"""Durable per-repository sync state in a single JSON file.

Reads never destroy data: anything that cannot be used as-is (unreadable
bytes, bad JSON, a schema violation, an unknown version) is copied to a
timestamped backup next to the file and reported with a typed error.

Writes go to a unique temp file in the same directory and are renamed into
place, so readers see either the old or the new document, never a torn one.
"""

from __future__ import annotations

import errno
import itertools
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path

from repo_expert.errors import (
    AgentNotFoundError,
    StateCorruptError,
    StateSchemaError,
    UnsupportedStateVersionError,
)
from repo_expert.state.models import STATE_VERSION, AgentState, AppState, SchemaViolation, migrate

logger = logging.getLogger(__name__)

RENAME_RETRIES = 3
RENAME_BACKOFF = 0.05  # seconds, multiplied by the attempt number
_TRANSIENT_RENAME_ERRNOS = frozenset({errno.EBUSY, errno.EACCES, errno.EPERM})

# Fields that identify an agent and must not be changed through update_agent
_IMMUTABLE_FIELDS = frozenset({"agent_id", "repo_name", "created_at"})

_tmp_counter = itertools.count()


# ── Read variants ────────────────────────────────────────────


@dataclass(frozen=True)
class StateMissing:
    """No state file yet. A valid, empty starting point."""


@dataclass(frozen=True)
class StateFound:
    raw: bytes


def read_state_file(path: Path) -> StateMissing | StateFound:
    try:
        return StateFound(raw=path.read_bytes())
    except FileNotFoundError:
        return StateMissing()


def now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


class StateStore:
    """Load, save and update the state file at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    # ── Reading ──────────────────────────────────────────────

    def load(self) -> AppState:
        try:
            found = read_state_file(self.path)
        except OSError as e:
            raise StateCorruptError(f"State file {self.path} is unreadable: {e}", self._backup())
        if isinstance(found, StateMissing):
            return AppState()

        try:
            data = json.loads(found.raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateCorruptError(f"State file {self.path} is not valid JSON: {e}", self._backup())

        if isinstance(data, dict):
            data = migrate(data)

        try:
            state = AppState.from_dict(data)
        except SchemaViolation as e:
            raise StateSchemaError(f"State file {self.path} is invalid: {e}", self._backup())

        if state.state_version != STATE_VERSION:
            raise UnsupportedStateVersionError(state.state_version, self._backup())

        return state

    def _backup(self) -> Path | None:
        """Copy the rejected file aside. None when it cannot be copied; the original stays put."""
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        backup = self.path.with_name(f"{self.path.name}.backup-{ts}")
        try:
            shutil.copy2(self.path, backup)
        except OSError as e:
            logger.error("State file rejected, backup to %s failed: %s", backup, e)
            return None
        logger.error("State file rejected, original backed up to %s", backup)
        return backup

    # ── Writing ──────────────────────────────────────────────

    def save(self, state: AppState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        state.state_version = STATE_VERSION
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.{next(_tmp_counter)}.tmp")
        try:
            tmp.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")
            self._rename_with_retry(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    @staticmethod
    def _rename_with_retry(src: Path, dst: Path) -> None:
        for attempt in range(1, RENAME_RETRIES + 1):
            try:
                os.replace(src, dst)
                return
            except OSError as e:
                if e.errno not in _TRANSIENT_RENAME_ERRNOS or attempt == RENAME_RETRIES:
                    raise
                logger.debug("Rename %s failed (%s), retry %d", dst, e, attempt)
                time.sleep(RENAME_BACKOFF * attempt)

    # ── Field-level updates ──────────────────────────────────

    def update_agent(self, repo_name: str, **changes: object) -> AgentState:
        """Re-read the latest state, apply ``changes`` to one agent, save.

        Re-reading first keeps concurrent updates to *other* repositories
        sharing this file from being clobbered.
        """
        allowed = {f.name for f in fields(AgentState)} - _IMMUTABLE_FIELDS
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update agent fields: {sorted(unknown)}")

        state = self.load()
        agent = state.agents.get(repo_name)
        if agent is None:
            raise AgentNotFoundError(repo_name)
        for key, value in changes.items():
            setattr(agent, key, value)
        self.save(state)
        return agent

    def add_agent(self, repo_name: str, agent_id: str, created_at: str | None = None) -> AgentState:
        """Register a freshly created agent with empty passages and no sync cursor."""
        state = self.load()
        agent = AgentState(
            agent_id=agent_id,
            repo_name=repo_name,
            created_at=created_at or now_iso(),
        )
        state.agents[repo_name] = agent
        self.save(state)
        return agent

    def remove_agent(self, repo_name: str) -> None:
        state = self.load()
        if state.agents.pop(repo_name, None) is not None:
            self.save(state)
