"""Tests for configuration loading."""

import pytest
from pathlib import Path

from repo_expert import config as config_module
from repo_expert.config import load_config
from repo_expert.errors import ConfigError

_ENV_KEYS = [
    "REPO_EXPERT_BASE_URL",
    "REPO_EXPERT_TOKEN",
    "REPO_EXPERT_STATE",
    "REPO_EXPERT_INTERVAL",
    "REPO_EXPERT_DEBOUNCE",
    "REPO_EXPERT_LOG_LEVEL",
]


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_DEFAULT_HOME", tmp_path / "home")
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return tmp_path


class TestConfig:
    def test_defaults(self, clean_env):
        config = load_config()
        assert config.provider.name == "letta"
        assert config.provider.base_url == "http://localhost:8283"
        assert config.watch.interval == 30
        assert config.watch.debounce == 2
        assert config.repos == {}
        assert config.state_file.name == "state.json"

    def test_env_override(self, clean_env, monkeypatch):
        monkeypatch.setenv("REPO_EXPERT_BASE_URL", "http://letta:9000")
        monkeypatch.setenv("REPO_EXPERT_INTERVAL", "5")
        monkeypatch.setenv("REPO_EXPERT_STATE", str(clean_env / "s.json"))

        config = load_config()
        assert config.provider.base_url == "http://letta:9000"
        assert config.watch.interval == 5
        assert config.state_file == (clean_env / "s.json").resolve()

    def test_toml_file(self, clean_env):
        toml_path = clean_env / "repo-expert.toml"
        toml_path.write_text("""
[provider]
base_url = "http://example:8283"
timeout = 30

[watch]
interval = 10
debounce = 0.5

[defaults]
max_file_size_kb = 80

[repos.my-app]
path = "./app"
base_path = "/packages/frontend/"
extensions = [".ts", ".tsx"]
ignore_dirs = ["node_modules", "dist"]
include_submodules = true
description = "Frontend"
""")
        config = load_config(toml_path)
        assert config.provider.base_url == "http://example:8283"
        assert config.provider.timeout == 30
        assert config.watch.interval == 10
        assert config.watch.debounce == 0.5

        repo = config.repos["my-app"]
        assert repo.path == str((clean_env / "app").resolve())
        assert repo.base_path == "packages/frontend"
        assert repo.extensions == (".ts", ".tsx")
        assert repo.ignore_dirs == ("node_modules", "dist")
        assert repo.max_file_size_kb == 80
        assert repo.include_submodules is True

    def test_env_overrides_toml(self, clean_env, monkeypatch):
        monkeypatch.setenv("REPO_EXPERT_DEBOUNCE", "7")

        toml_path = clean_env / "repo-expert.toml"
        toml_path.write_text("""
[watch]
debounce = 1
""")
        config = load_config(toml_path)
        assert config.watch.debounce == 7  # env wins

    def test_config_found_in_cwd(self, clean_env):
        (clean_env / "repo-expert.toml").write_text('log_level = "DEBUG"\n')
        assert load_config().log_level == "DEBUG"

    def test_explicit_missing_file(self, clean_env):
        with pytest.raises(ConfigError):
            load_config(clean_env / "nope.toml")


class TestRepoValidation:
    def _write(self, tmp_path: Path, body: str) -> Path:
        path = tmp_path / "repo-expert.toml"
        path.write_text(body)
        return path

    def test_missing_required_field(self, clean_env):
        path = self._write(clean_env, '[repos.x]\npath = "."\nextensions = [".py"]\n')
        with pytest.raises(ConfigError, match="ignore_dirs"):
            load_config(path)

    def test_extensions_must_be_strings(self, clean_env):
        path = self._write(
            clean_env, '[repos.x]\npath = "."\nextensions = [1]\nignore_dirs = []\n'
        )
        with pytest.raises(ConfigError, match="extensions"):
            load_config(path)

    def test_empty_base_path_is_none(self, clean_env):
        path = self._write(
            clean_env,
            '[repos.x]\npath = "."\nbase_path = "/"\nextensions = [".py"]\nignore_dirs = []\n',
        )
        assert load_config(path).repos["x"].base_path is None

    def test_default_max_size(self, clean_env):
        path = self._write(
            clean_env, '[repos.x]\npath = "."\nextensions = [".py"]\nignore_dirs = []\n'
        )
        assert load_config(path).repos["x"].max_file_size_kb == 50
