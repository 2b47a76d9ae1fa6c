"""Persisted sync state.

Layout of the state file::

    {
      "stateVersion": 2,
      "agents": {
        "<repoName>": {
          "agentId": "...",
          "repoName": "...",
          "passages": {"src/a.py": ["passage-1", "passage-2"]},
          "lastBootstrap": null,
          "lastSyncCommit": "<sha or null>",
          "lastSyncAt": "<iso timestamp or null>",
          "createdAt": "<iso timestamp>"
        }
      }
    }
"""

from repo_expert.state.models import STATE_VERSION, AgentState, AppState
from repo_expert.state.store import StateStore, now_iso

__all__ = ["STATE_VERSION", "AgentState", "AppState", "StateStore", "now_iso"]
