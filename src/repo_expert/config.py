"""Configuration loading from environment variables and repo-expert.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from repo_expert.errors import ConfigError

_CONFIG_FILENAME = "repo-expert.toml"
_DEFAULT_HOME = Path.home() / ".repo-expert"
_DEFAULT_STATE_FILE = _DEFAULT_HOME / "state.json"
_DEFAULT_MAX_FILE_SIZE_KB = 50


@dataclass(frozen=True)
class RepoConfig:
    """Per-repository collection settings. Immutable for the length of a sync."""

    path: str
    extensions: tuple[str, ...]
    ignore_dirs: tuple[str, ...]
    max_file_size_kb: float = _DEFAULT_MAX_FILE_SIZE_KB
    base_path: str | None = None
    include_submodules: bool = False
    description: str = ""
    tags: tuple[str, ...] = ()


@dataclass
class ProviderConfig:
    """Remote passage store connection."""

    name: str = "letta"
    base_url: str = "http://localhost:8283"
    token: str | None = None
    timeout: int = 60


@dataclass
class WatchConfig:
    """Watch daemon timing, in seconds."""

    interval: float = 30.0
    debounce: float = 2.0
    concurrency: int = 20
    full_reindex_threshold: int = 500


@dataclass
class AppConfig:
    """Top-level repo-expert configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    repos: dict[str, RepoConfig] = field(default_factory=dict)
    state_file: Path = _DEFAULT_STATE_FILE
    pid_file: Path = _DEFAULT_HOME / "watch.pid"
    log_level: str = "INFO"


def _resolve_path(p: str) -> str:
    return str(Path(p).expanduser().resolve())


def _string_list(repo_name: str, key: str, value: object) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"repos.{repo_name}.{key} must be a list of strings")
    return tuple(value)


def _parse_repo(name: str, data: dict, default_max_kb: float) -> RepoConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"repos.{name} must be a table")
    for key in ("path", "extensions", "ignore_dirs"):
        if key not in data:
            raise ConfigError(f"repos.{name} is missing required field '{key}'")
    if not isinstance(data["path"], str):
        raise ConfigError(f"repos.{name}.path must be a string")

    base_path = data.get("base_path")
    if base_path is not None and not isinstance(base_path, str):
        raise ConfigError(f"repos.{name}.base_path must be a string")
    if base_path:
        base_path = base_path.replace("\\", "/").strip("/") or None

    return RepoConfig(
        path=_resolve_path(data["path"]),
        base_path=base_path or None,
        extensions=_string_list(name, "extensions", data["extensions"]),
        ignore_dirs=_string_list(name, "ignore_dirs", data["ignore_dirs"]),
        max_file_size_kb=float(data.get("max_file_size_kb", default_max_kb)),
        include_submodules=bool(data.get("include_submodules", False)),
        description=str(data.get("description", "")),
        tags=_string_list(name, "tags", data.get("tags", [])),
    )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from environment variables and optional repo-expert.toml.

    Priority: environment variables > repo-expert.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    elif config_path:
        raise ConfigError(f"Config file not found: {config_path}")
    else:
        # Search current dir and ~/.repo-expert/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    provider_data = file_data.get("provider", {})
    watch_data = file_data.get("watch", {})
    defaults_data = file_data.get("defaults", {})
    default_max_kb = float(defaults_data.get("max_file_size_kb", _DEFAULT_MAX_FILE_SIZE_KB))

    repos = {
        name: _parse_repo(name, data, default_max_kb)
        for name, data in file_data.get("repos", {}).items()
    }

    state_file = os.getenv("REPO_EXPERT_STATE", file_data.get("state_file"))

    return AppConfig(
        provider=ProviderConfig(
            name=provider_data.get("name", "letta"),
            base_url=os.getenv(
                "REPO_EXPERT_BASE_URL", provider_data.get("base_url", "http://localhost:8283")
            ),
            token=os.getenv("REPO_EXPERT_TOKEN", provider_data.get("token")),
            timeout=int(provider_data.get("timeout", 60)),
        ),
        watch=WatchConfig(
            interval=float(os.getenv("REPO_EXPERT_INTERVAL", watch_data.get("interval", 30))),
            debounce=float(os.getenv("REPO_EXPERT_DEBOUNCE", watch_data.get("debounce", 2))),
            concurrency=int(watch_data.get("concurrency", 20)),
            full_reindex_threshold=int(watch_data.get("full_reindex_threshold", 500)),
        ),
        repos=repos,
        state_file=Path(_resolve_path(state_file)) if state_file else _DEFAULT_STATE_FILE,
        log_level=os.getenv("REPO_EXPERT_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
