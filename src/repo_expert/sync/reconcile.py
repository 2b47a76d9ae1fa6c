"""Detect and repair drift between the local passage map and the remote store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from repo_expert.sync.executor import DEFAULT_CONCURRENCY, BoundedPool, delete_passages
from repo_expert.sync.plan import PassageMap

if TYPE_CHECKING:
    from repo_expert.providers.base import Passage, PassageProvider
    from repo_expert.state.models import AgentState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcilePlan:
    orphan_passage_ids: list[str]  # on the server, not in the local map
    missing_passage_ids: list[str]  # in the local map, not on the server

    @property
    def in_sync(self) -> bool:
        return not self.orphan_passage_ids and not self.missing_passage_ids


@dataclass(frozen=True)
class ReconcileResult:
    repo_name: str
    local_passage_count: int
    server_passage_count: int
    plan: ReconcilePlan

    @property
    def in_sync(self) -> bool:
        return self.plan.in_sync


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def compute_reconcile_plan(passage_map: PassageMap, server_passages: list[Passage]) -> ReconcilePlan:
    """Pure comparison of local bookkeeping against a server listing."""
    local_ids = _unique(pid for ids in passage_map.values() for pid in ids)
    server_ids = _unique(p.id for p in server_passages)
    local_set = set(local_ids)
    server_set = set(server_ids)
    return ReconcilePlan(
        orphan_passage_ids=[pid for pid in server_ids if pid not in local_set],
        missing_passage_ids=[pid for pid in local_ids if pid not in server_set],
    )


def clean_missing_from_map(passage_map: PassageMap, missing_ids: list[str]) -> PassageMap:
    """Strip ``missing_ids`` from the map, dropping files left with no passages.

    With nothing to strip the very same map object is returned.
    """
    if not missing_ids:
        return passage_map
    missing = set(missing_ids)
    cleaned: PassageMap = {}
    for path, ids in passage_map.items():
        kept = [pid for pid in ids if pid not in missing]
        if kept:
            cleaned[path] = kept
    return cleaned


async def reconcile_agent(provider: PassageProvider, agent: AgentState) -> ReconcileResult:
    """Fetch the server's passages for ``agent`` and compare them to the local map."""
    server_passages = await provider.list_passages(agent.agent_id)
    plan = compute_reconcile_plan(agent.passages, server_passages)
    return ReconcileResult(
        repo_name=agent.repo_name,
        local_passage_count=sum(len(ids) for ids in agent.passages.values()),
        server_passage_count=len(server_passages),
        plan=plan,
    )


async def fix_reconcile_drift(
    provider: PassageProvider,
    agent: AgentState,
    plan: ReconcilePlan,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> PassageMap:
    """Delete orphans remotely and return the map without missing ids.

    Orphan deletions that fail (typically: already gone) are ignored.
    """
    if plan.orphan_passage_ids:
        failed = await delete_passages(
            provider, agent.agent_id, plan.orphan_passage_ids, BoundedPool(concurrency)
        )
        logger.info(
            "[%s] deleted %d orphan passages (%d failures ignored)",
            agent.repo_name,
            len(plan.orphan_passage_ids) - failed,
            failed,
        )
    return clean_missing_from_map(agent.passages, plan.missing_passage_ids)
