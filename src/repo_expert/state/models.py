"""Persisted state shapes and their JSON (camelCase) representation."""

from __future__ import annotations

from dataclasses import dataclass, field

from repo_expert.sync.plan import PassageMap

STATE_VERSION = 2
# Versions that are migrated forward on read. None = file predates versioning.
LEGACY_VERSIONS = (None, 1)


class SchemaViolation(ValueError):
    """Raised by the ``from_dict`` parsers; the store turns it into a StateSchemaError."""


@dataclass
class AgentState:
    agent_id: str
    repo_name: str
    passages: PassageMap = field(default_factory=dict)
    last_bootstrap: str | None = None
    last_sync_commit: str | None = None
    last_sync_at: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "repoName": self.repo_name,
            "passages": {path: list(ids) for path, ids in self.passages.items()},
            "lastBootstrap": self.last_bootstrap,
            "lastSyncCommit": self.last_sync_commit,
            "lastSyncAt": self.last_sync_at,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, repo_name: str, data: object) -> AgentState:
        if not isinstance(data, dict):
            raise SchemaViolation(f"agents.{repo_name} must be an object")

        def _str(key: str, nullable: bool = False) -> str | None:
            value = data.get(key)
            if value is None and nullable:
                return None
            if not isinstance(value, str):
                raise SchemaViolation(f"agents.{repo_name}.{key} must be a string")
            return value

        passages = data.get("passages", {})
        if not isinstance(passages, dict):
            raise SchemaViolation(f"agents.{repo_name}.passages must be an object")
        for path, ids in passages.items():
            if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
                raise SchemaViolation(
                    f"agents.{repo_name}.passages[{path!r}] must be a list of strings"
                )

        return cls(
            agent_id=_str("agentId"),
            repo_name=_str("repoName"),
            passages={path: list(ids) for path, ids in passages.items()},
            last_bootstrap=_str("lastBootstrap", nullable=True),
            last_sync_commit=_str("lastSyncCommit", nullable=True),
            last_sync_at=_str("lastSyncAt", nullable=True),
            created_at=_str("createdAt"),
        )


@dataclass
class AppState:
    agents: dict[str, AgentState] = field(default_factory=dict)
    state_version: int = STATE_VERSION

    def to_dict(self) -> dict:
        return {
            "stateVersion": STATE_VERSION,
            "agents": {name: agent.to_dict() for name, agent in self.agents.items()},
        }

    @classmethod
    def from_dict(cls, data: object) -> AppState:
        if not isinstance(data, dict):
            raise SchemaViolation("state must be a JSON object")
        version = data.get("stateVersion")
        if not isinstance(version, int) or isinstance(version, bool):
            raise SchemaViolation("stateVersion must be an integer")
        agents = data.get("agents")
        if not isinstance(agents, dict):
            raise SchemaViolation("agents must be an object")
        return cls(
            agents={name: AgentState.from_dict(name, raw) for name, raw in agents.items()},
            state_version=version,
        )


def migrate(data: dict) -> dict:
    """Rewrite known legacy shapes to the current version. Unknown versions pass through."""
    version = data.get("stateVersion")
    # 1 == True == 1.0 in Python; only a real int counts as v1
    if version is None or (type(version) is int and version in LEGACY_VERSIONS):
        # v1 and unversioned files share the v2 agent layout
        return {**data, "stateVersion": STATE_VERSION, "agents": data.get("agents", {})}
    return data
