"""Tests for the JSON state store."""

import errno
import json
from pathlib import Path

import pytest

from repo_expert.errors import (
    AgentNotFoundError,
    StateCorruptError,
    StateError,
    StateSchemaError,
    UnsupportedStateVersionError,
)
from repo_expert.state import STATE_VERSION, AgentState, AppState, StateStore
from repo_expert.state import store as store_module


def _agent_dict(**overrides) -> dict:
    data = {
        "agentId": "agent-1",
        "repoName": "my-app",
        "passages": {"src/a.py": ["p1", "p2"]},
        "lastBootstrap": None,
        "lastSyncCommit": "abc123",
        "lastSyncAt": "2025-01-01T00:00:00.000Z",
        "createdAt": "2025-01-01T00:00:00.000Z",
    }
    data.update(overrides)
    return data


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state.json"


def _backups(path: Path) -> list[Path]:
    return sorted(path.parent.glob(f"{path.name}.backup-*"))


class TestLoad:
    def test_missing_file_is_empty_state(self, state_path):
        state = StateStore(state_path).load()
        assert state.agents == {}
        assert state.state_version == STATE_VERSION
        assert not state_path.exists()

    def test_round_trip(self, state_path):
        store = StateStore(state_path)
        agent = AgentState(
            agent_id="agent-1",
            repo_name="my-app",
            passages={"a.py": ["p1"]},
            last_sync_commit="abc",
            created_at="2025-01-01T00:00:00.000Z",
        )
        store.save(AppState(agents={"my-app": agent}))

        assert store.load().agents["my-app"] == agent

    def test_camel_case_on_disk(self, state_path):
        store = StateStore(state_path)
        store.add_agent("my-app", "agent-1", created_at="t0")
        raw = json.loads(state_path.read_text())
        assert raw["stateVersion"] == STATE_VERSION
        assert raw["agents"]["my-app"] == {
            "agentId": "agent-1",
            "repoName": "my-app",
            "passages": {},
            "lastBootstrap": None,
            "lastSyncCommit": None,
            "lastSyncAt": None,
            "createdAt": "t0",
        }

    @pytest.mark.parametrize("legacy", [{}, {"stateVersion": 1}])
    def test_legacy_versions_migrated(self, state_path, legacy):
        state_path.write_text(json.dumps({**legacy, "agents": {"my-app": _agent_dict()}}))

        state = StateStore(state_path).load()
        assert state.state_version == STATE_VERSION
        assert state.agents["my-app"].passages == {"src/a.py": ["p1", "p2"]}
        assert _backups(state_path) == []

    def test_nullable_fields_may_be_absent(self, state_path):
        data = _agent_dict()
        del data["lastBootstrap"], data["lastSyncAt"]
        state_path.write_text(json.dumps({"stateVersion": 2, "agents": {"my-app": data}}))
        agent = StateStore(state_path).load().agents["my-app"]
        assert agent.last_bootstrap is None
        assert agent.last_sync_at is None


class TestRejectedFiles:
    def _assert_preserved(self, state_path: Path, original: str, err: StateError) -> None:
        assert state_path.read_text() == original
        [backup] = _backups(state_path)
        assert backup.read_text() == original
        assert err.backup_path == backup
        assert str(backup) in str(err)

    def test_corrupt_json(self, state_path):
        original = '{"stateVersion": 2, "agents": {'
        state_path.write_text(original)

        with pytest.raises(StateCorruptError) as exc:
            StateStore(state_path).load()
        self._assert_preserved(state_path, original, exc.value)

    def test_newer_version(self, state_path):
        original = json.dumps({"stateVersion": 99, "agents": {}})
        state_path.write_text(original)

        with pytest.raises(UnsupportedStateVersionError) as exc:
            StateStore(state_path).load()
        assert exc.value.version == 99
        self._assert_preserved(state_path, original, exc.value)

    @pytest.mark.parametrize(
        "doc",
        [
            [],
            {"stateVersion": 2},
            {"stateVersion": "2", "agents": {}},
            {"stateVersion": 2, "agents": {"x": _agent_dict(passages={"a": "p1"})}},
            {"stateVersion": 2, "agents": {"x": _agent_dict(agentId=5)}},
        ],
    )
    def test_schema_violation(self, state_path, doc):
        original = json.dumps(doc)
        state_path.write_text(original)

        with pytest.raises(StateSchemaError) as exc:
            StateStore(state_path).load()
        self._assert_preserved(state_path, original, exc.value)

    def test_invalid_utf8(self, state_path):
        original = b'{"stateVersion": 2, "agents": {"\xff\xfe": 1}}'
        state_path.write_bytes(original)

        with pytest.raises(StateCorruptError) as exc:
            StateStore(state_path).load()
        assert state_path.read_bytes() == original
        [backup] = _backups(state_path)
        assert backup.read_bytes() == original
        assert exc.value.backup_path == backup

    def test_unreadable_path(self, state_path):
        state_path.mkdir()

        with pytest.raises(StateCorruptError) as exc:
            StateStore(state_path).load()
        assert exc.value.backup_path is None
        assert "left in place" in str(exc.value)
        assert state_path.is_dir()
        assert _backups(state_path) == []

    @pytest.mark.parametrize("version", [True, 1.0])
    def test_version_must_be_a_real_int(self, state_path, version):
        original = json.dumps({"stateVersion": version, "agents": {}})
        state_path.write_text(original)

        with pytest.raises(StateSchemaError) as exc:
            StateStore(state_path).load()
        self._assert_preserved(state_path, original, exc.value)

    def test_update_does_not_overwrite_rejected_file(self, state_path):
        state_path.write_text("not json")
        with pytest.raises(StateCorruptError):
            StateStore(state_path).update_agent("my-app", last_sync_commit="x")
        assert state_path.read_text() == "not json"


class TestSave:
    def test_no_temp_files_left(self, state_path):
        store = StateStore(state_path)
        store.add_agent("a", "agent-a")
        store.add_agent("b", "agent-b")
        leftovers = [p.name for p in state_path.parent.iterdir() if p.name != "state.json"]
        assert leftovers == []

    def test_creates_parent_dirs(self, tmp_path):
        store = StateStore(tmp_path / "nested" / "dir" / "state.json")
        store.save(AppState())
        assert store.path.exists()

    def test_failed_write_removes_temp(self, state_path, monkeypatch):
        store = StateStore(state_path)
        store.add_agent("a", "agent-a")
        before = state_path.read_text()

        def disk_full(self, data, *args, **kwargs):
            with open(self, "w") as f:
                f.write(data[:10])
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(store_module.Path, "write_text", disk_full)

        with pytest.raises(OSError):
            store.add_agent("b", "agent-b")
        assert [p.name for p in state_path.parent.iterdir()] == ["state.json"]
        assert state_path.read_text() == before

    def test_rename_retried_on_transient_error(self, state_path, monkeypatch):
        real_replace = store_module.os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append(src)
            if len(calls) < 3:
                raise OSError(errno.EBUSY, "busy")
            real_replace(src, dst)

        monkeypatch.setattr(store_module.os, "replace", flaky_replace)
        monkeypatch.setattr(store_module.time, "sleep", lambda _: None)

        StateStore(state_path).save(AppState())
        assert len(calls) == 3
        assert json.loads(state_path.read_text())["stateVersion"] == STATE_VERSION

    def test_rename_gives_up_after_retries(self, state_path, monkeypatch):
        def always_busy(src, dst):
            raise OSError(errno.EACCES, "denied")

        monkeypatch.setattr(store_module.os, "replace", always_busy)
        monkeypatch.setattr(store_module.time, "sleep", lambda _: None)

        with pytest.raises(OSError):
            StateStore(state_path).save(AppState())
        assert list(state_path.parent.iterdir()) == []

    def test_non_transient_error_not_retried(self, state_path, monkeypatch):
        calls = []

        def no_space(src, dst):
            calls.append(src)
            raise OSError(errno.ENOSPC, "no space")

        monkeypatch.setattr(store_module.os, "replace", no_space)

        with pytest.raises(OSError):
            StateStore(state_path).save(AppState())
        assert len(calls) == 1


class TestAgents:
    def test_add_agent(self, state_path):
        store = StateStore(state_path)
        agent = store.add_agent("my-app", "agent-1")
        assert agent.passages == {}
        assert agent.last_sync_commit is None
        assert agent.created_at
        assert store.load().agents["my-app"].agent_id == "agent-1"

    def test_update_agent(self, state_path):
        store = StateStore(state_path)
        store.add_agent("my-app", "agent-1")
        store.update_agent("my-app", passages={"a.py": ["p1"]}, last_sync_commit="def")

        agent = store.load().agents["my-app"]
        assert agent.passages == {"a.py": ["p1"]}
        assert agent.last_sync_commit == "def"

    def test_update_rereads_file(self, state_path):
        # Two writers sharing one file must not clobber each other's repos
        first = StateStore(state_path)
        second = StateStore(state_path)
        first.add_agent("a", "agent-a")
        second.add_agent("b", "agent-b")

        first.update_agent("a", last_sync_commit="c-a")
        second.update_agent("b", last_sync_commit="c-b")

        agents = StateStore(state_path).load().agents
        assert agents["a"].last_sync_commit == "c-a"
        assert agents["b"].last_sync_commit == "c-b"

    def test_update_unknown_agent(self, state_path):
        with pytest.raises(AgentNotFoundError, match="No agent found for repo: ghost"):
            StateStore(state_path).update_agent("ghost", last_sync_commit="x")

    @pytest.mark.parametrize("field_name", ["agent_id", "repo_name", "created_at", "bogus"])
    def test_update_rejects_fields(self, state_path, field_name):
        store = StateStore(state_path)
        store.add_agent("my-app", "agent-1")
        with pytest.raises(ValueError):
            store.update_agent("my-app", **{field_name: "x"})

    def test_remove_agent(self, state_path):
        store = StateStore(state_path)
        store.add_agent("my-app", "agent-1")
        store.remove_agent("my-app")
        store.remove_agent("never-existed")
        assert store.load().agents == {}
